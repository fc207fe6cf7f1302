"""Environment-based configuration for the exporter and the self-updater."""

from __future__ import annotations

import datetime as dt
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .errors import ConfigError


DEFAULT_ENV_FILE = Path("/etc/os-updates-exporter.env")
TEXTFILE_NAME = "os_updates.prom"
TEXTFILE_DIR_CANDIDATES = (
    "/var/lib/node_exporter",
    "/var/lib/prometheus/node-exporter",
    "/var/lib/alloy",
    "/var/lib/grafana-agent",
)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")


def _load_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    data: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        raw = line.strip()
        if not raw or raw.startswith("#") or "=" not in raw:
            continue
        if raw.startswith("export "):
            raw = raw[len("export ") :].strip()
        key, value = raw.split("=", 1)
        data[key.strip()] = value.strip().strip("\"").strip("'")
    return data


def parse_duration(raw: str) -> float | None:
    """Parse ``90s``, ``1m30s``, ``500ms`` or bare seconds into seconds."""
    text = raw.strip().lower()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        pass
    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            return None
        value = float(match.group(1))
        unit = match.group(2)
        total += value * {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}[unit]
        pos = match.end()
    if pos != len(text):
        return None
    return total


def parse_hhmm(raw: str) -> int:
    """Return ``hour*100+minute`` for ``HHMM``/``HH:MM`` or -1 when invalid."""
    text = raw.strip().replace(":", "")
    if len(text) != 4 or not text.isdigit():
        return -1
    value = int(text)
    if value // 100 > 23 or value % 100 > 59:
        return -1
    return value


def in_maintenance_window(start: int, end: int, hhmm: int) -> bool:
    """Whether ``hhmm`` falls within the daily window ``[start, end]``.

    ``start == end`` is a 24-hour window; ``start > end`` wraps midnight.
    """
    if start < 0 or end < 0:
        return False
    if start == end:
        return True
    if start < end:
        return start <= hhmm <= end
    return hhmm >= start or hhmm <= end


def autodetect_textfile_dir() -> str:
    for candidate in TEXTFILE_DIR_CANDIDATES:
        if Path(candidate).is_dir():
            return candidate
    return TEXTFILE_DIR_CANDIDATES[0]


@dataclass(frozen=True)
class ExporterConfig:
    textfile_dir: Path
    state_file: Path
    lock_file: Path
    file_mode: int
    patch_threshold: int
    patch_threshold_security: int
    patch_threshold_bugfix: int
    mw_start: str
    mw_end: str
    repo_head_timeout_sec: float
    pkgmgr_timeout_sec: float
    offline_mode: bool
    fail_open: bool
    debug: bool
    disable_self_update: bool
    update_channel: str
    checksum_required: bool
    github_repo: str
    asset_prefix: str
    install_path: Path
    update_tmp_dir: Path

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        env_file: Path | None = None,
    ) -> "ExporterConfig":
        env = dict(os.environ if environ is None else environ)
        if env_file is None:
            env_file = Path(env.get("ENV_FILE", "").strip() or DEFAULT_ENV_FILE)
        merged = {**_load_env_file(env_file), **env}

        def _str(key: str, default: str) -> str:
            value = str(merged.get(key, "")).strip()
            return value or default

        def _int(key: str, default: int) -> int:
            raw = str(merged.get(key, "")).strip()
            if not raw:
                return default
            try:
                return int(raw)
            except ValueError:
                return default

        def _bool(key: str, default: bool) -> bool:
            raw = str(merged.get(key, "")).strip().lower()
            if raw in {"1", "true", "yes", "y", "on"}:
                return True
            if raw in {"0", "false", "no", "n", "off"}:
                return False
            return default

        def _duration(key: str, default: float) -> float:
            parsed = parse_duration(str(merged.get(key, "")))
            if parsed is None or parsed <= 0:
                return default
            return parsed

        textfile_dir = str(merged.get("TEXTFILE_DIR", "")).strip()
        if "TEXTFILE_DIR" not in merged:
            textfile_dir = autodetect_textfile_dir()
        if not textfile_dir:
            raise ConfigError("TEXTFILE_DIR is empty")

        return cls(
            textfile_dir=Path(textfile_dir),
            state_file=Path(_str("STATE_FILE", "/var/lib/os-updates-exporter/state.json")),
            lock_file=Path(_str("LOCK_FILE", "/run/os-updates-exporter.lock")),
            file_mode=0o640,
            patch_threshold=_int("PATCH_THRESHOLD", 3),
            patch_threshold_security=_int("PATCH_THRESHOLD_SECURITY", 0),
            patch_threshold_bugfix=_int("PATCH_THRESHOLD_BUGFIX", 0),
            mw_start=str(merged.get("MW_START", "")).strip(),
            mw_end=str(merged.get("MW_END", "")).strip(),
            repo_head_timeout_sec=_duration("REPO_HEAD_TIMEOUT", 5.0),
            pkgmgr_timeout_sec=_duration("PKGMGR_TIMEOUT", 90.0),
            offline_mode=_bool("OFFLINE_MODE", False),
            fail_open=_bool("FAIL_OPEN", True),
            debug=_bool("DEBUG", False),
            disable_self_update=_bool("DISABLE_SELF_UPDATE", False),
            update_channel=_str("UPDATE_CHANNEL", "latest"),
            checksum_required=_bool("CHECKSUM_REQUIRED", True),
            github_repo=_str("GITHUB_REPO", "R4VXN/Prometheus"),
            asset_prefix=_str("GITHUB_ASSET_PREFIX", "os-updates-exporter_Linux_"),
            install_path=Path(_str("INSTALL_PATH", "/usr/local/bin/os-updates-exporter")),
            update_tmp_dir=Path(_str("UPDATE_TMP_DIR", "/var/lib/os-updates-exporter/tmp")),
        )

    @property
    def textfile_path(self) -> Path:
        return self.textfile_dir / TEXTFILE_NAME

    def in_maintenance_window(self, now: dt.datetime | None = None) -> bool:
        if not self.mw_start or not self.mw_end:
            return False
        current = now or dt.datetime.now()
        return in_maintenance_window(
            parse_hhmm(self.mw_start),
            parse_hhmm(self.mw_end),
            current.hour * 100 + current.minute,
        )
