"""systemd service/timer installation for the collector and the updater."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Any, Callable, Sequence


logger = logging.getLogger(__name__)

UNIT_DIR = Path("/etc/systemd/system")
COLLECTOR_UNIT = "os-updates-exporter"
UPDATER_UNIT = "os-updates-exporter-update"

Runner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]


def collector_service(install_path: Path) -> str:
    return f"""[Unit]
Description=os-updates-exporter (oneshot)
Wants=network-online.target
After=network-online.target

[Service]
Type=oneshot
EnvironmentFile=-/etc/os-updates-exporter.env
ExecStart={install_path} run

NoNewPrivileges=yes
PrivateTmp=yes
ProtectSystem=full
ProtectHome=yes
ProtectControlGroups=yes
ProtectKernelTunables=yes
ProtectKernelModules=yes
LockPersonality=yes
RestrictRealtime=yes
RestrictSUIDSGID=yes
SystemCallArchitectures=native

# metrics, state and lock
ReadWritePaths=/var/lib/node_exporter /var/lib/os-updates-exporter /run /var/lib/alloy /var/lib/grafana-agent

[Install]
WantedBy=multi-user.target
"""


COLLECTOR_TIMER = f"""[Unit]
Description=Run os-updates-exporter periodically

[Timer]
OnBootSec=2m
OnUnitActiveSec=15m
RandomizedDelaySec=2m
Unit={COLLECTOR_UNIT}.service

[Install]
WantedBy=timers.target
"""


def updater_service(install_path: Path) -> str:
    return f"""[Unit]
Description=os-updates-exporter self-update (oneshot)
Wants=network-online.target
After=network-online.target

[Service]
Type=oneshot
EnvironmentFile=-/etc/os-updates-exporter.env
ExecStart={install_path} updater run

NoNewPrivileges=yes
PrivateTmp=yes
ProtectSystem=full
ProtectHome=yes

ReadWritePaths={install_path.parent} /var/lib/os-updates-exporter /run

[Install]
WantedBy=multi-user.target
"""


UPDATER_TIMER = f"""[Unit]
Description=Daily os-updates-exporter self-update

[Timer]
OnBootSec=10m
OnUnitActiveSec=24h
RandomizedDelaySec=1h
Unit={UPDATER_UNIT}.service

[Install]
WantedBy=timers.target
"""


def _systemctl(args: Sequence[str]) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(["systemctl", *args], check=False, capture_output=True, text=True)


class UnitManager:
    """Writes unit files under ``unit_dir`` and drives ``systemctl``."""

    def __init__(self, install_path: Path, *, unit_dir: Path = UNIT_DIR, runner: Runner = _systemctl) -> None:
        self.install_path = Path(install_path)
        self.unit_dir = Path(unit_dir)
        self._runner = runner

    def _ctl(self, *args: str) -> bool:
        try:
            result = self._runner(list(args))
        except OSError as exc:
            logger.warning("systemctl %s failed to start: %s", " ".join(args), exc)
            return False
        if result.returncode != 0:
            detail = ((result.stderr or "") + (result.stdout or "")).strip()
            logger.warning("systemctl %s exited %s: %s", " ".join(args), result.returncode, detail)
            return False
        return True

    def _install(self, unit: str, service: str, timer: str) -> dict[str, Any]:
        paths = [self.unit_dir / f"{unit}.service", self.unit_dir / f"{unit}.timer"]
        try:
            self.unit_dir.mkdir(parents=True, exist_ok=True)
            for path, body in zip(paths, (service, timer)):
                path.write_text(body, encoding="utf-8")
                path.chmod(0o644)
        except OSError as exc:
            logger.error("cannot write unit files for %s: %s", unit, exc)
            return {"ok": False, "unit": unit, "error": str(exc)}
        self._ctl("daemon-reload")
        enabled = self._ctl("enable", "--now", f"{unit}.timer")
        return {"ok": True, "unit": unit, "files": [str(p) for p in paths], "enabled": enabled}

    def _uninstall(self, unit: str) -> dict[str, Any]:
        self._ctl("disable", "--now", f"{unit}.timer")
        removed: list[str] = []
        for path in (self.unit_dir / f"{unit}.service", self.unit_dir / f"{unit}.timer"):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("cannot remove %s: %s", path, exc)
                continue
            removed.append(str(path))
        self._ctl("daemon-reload")
        return {"ok": True, "unit": unit, "removed": removed}

    def install_collector(self) -> dict[str, Any]:
        return self._install(COLLECTOR_UNIT, collector_service(self.install_path), COLLECTOR_TIMER)

    def uninstall_collector(self) -> dict[str, Any]:
        return self._uninstall(COLLECTOR_UNIT)

    def install_updater(self) -> dict[str, Any]:
        return self._install(UPDATER_UNIT, updater_service(self.install_path), UPDATER_TIMER)

    def uninstall_updater(self) -> dict[str, Any]:
        return self._uninstall(UPDATER_UNIT)

    def updater_timer_enabled(self) -> tuple[bool, str]:
        try:
            result = self._runner(["is-enabled", f"{UPDATER_UNIT}.timer"])
        except OSError as exc:
            return False, str(exc)
        output = ((result.stdout or "") + (result.stderr or "")).strip()
        return result.returncode == 0, output
