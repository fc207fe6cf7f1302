"""Best-effort reboot-required detection and reason classification."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from .errors import CommandError

if TYPE_CHECKING:
    from .collector import CommandRunner


REBOOT_REQUIRED_FILE = Path("/var/run/reboot-required")
REBOOT_REQUIRED_PKGS = Path("/var/run/reboot-required.pkgs")


def classify_packages(text: str) -> str:
    """Map the packages that requested a reboot to a reason tag."""
    lower = text.lower()
    if any(token in lower for token in ("linux-image", "linux-headers", "kernel")):
        return "kernel"
    if "libc" in lower or "glibc" in lower:
        return "libc"
    if "systemd" in lower:
        return "systemd"
    return "other"


def classify_zypper_ps(text: str) -> tuple[bool, str]:
    lower = text.lower()
    if "no processes using deleted files" in lower:
        return False, "unknown"
    if "kernel" in lower:
        return True, "kernel"
    if "systemd" in lower:
        return True, "systemd"
    if text.strip():
        return True, "other"
    return False, "unknown"


def detect(
    manager: str,
    runner: "CommandRunner",
    *,
    flag_file: Path = REBOOT_REQUIRED_FILE,
    pkgs_file: Path = REBOOT_REQUIRED_PKGS,
    which: Callable[[str], str | None] = shutil.which,
) -> tuple[bool, str]:
    """Return ``(reboot_required, reason)``.

    reason is one of kernel, libc, systemd, other, unknown.
    """
    if flag_file.exists():
        try:
            return True, classify_packages(pkgs_file.read_text(encoding="utf-8"))
        except OSError:
            return True, "unknown"

    if manager in {"dnf", "yum"} and which("needs-restarting"):
        try:
            runner.run(["needs-restarting", "-r"])
        except CommandError as exc:
            # needs-restarting -r exits 1 when a reboot is required.
            if exc.returncode == 1:
                return True, "kernel"
            raise

    if manager == "zypper" and which("zypper"):
        out = runner.run(["zypper", "ps", "-s"], ok_codes=(0, *range(100, 107)))
        lines = out.splitlines()[:80]
        return classify_zypper_ps("\n".join(lines))

    return False, "unknown"
