"""Package-manager backends and pending update collection.

The active backend is resolved once by probing for its binaries; the run
then dispatches through the ``PackageBackend`` contract.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from .compliance import PendingCounts
from .errors import CommandError


logger = logging.getLogger(__name__)

OS_RELEASE = Path("/etc/os-release")
APT_PACKAGE_LINE = re.compile(r"^[^/]+/")
ZYPPER_INFO_CODES = (0, *range(100, 107))


class CommandRunner:
    """Runs external commands under one shared deadline.

    A non-accepted exit code, a missing binary or an expired deadline all
    raise ``CommandError``.
    """

    def __init__(self, timeout_sec: float | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._deadline = None if timeout_sec is None else clock() + float(timeout_sec)

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return self._deadline - self._clock()

    def run(self, argv: Sequence[str], *, ok_codes: Sequence[int] = (0,)) -> str:
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise CommandError(f"deadline exceeded before {argv[0]}")
        env = os.environ.copy()
        env["LANG"] = "C"
        env["LC_ALL"] = "C"
        try:
            cp = subprocess.run(
                list(argv),
                check=False,
                capture_output=True,
                text=True,
                env=env,
                timeout=remaining,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError(f"{argv[0]} timed out after {exc.timeout:.1f}s") from exc
        except OSError as exc:
            raise CommandError(f"{argv[0]} failed to start: {exc}") from exc
        if cp.returncode not in ok_codes:
            detail = (cp.stderr or "").strip()[:200]
            raise CommandError(f"{' '.join(argv)} exited {cp.returncode}: {detail}", returncode=cp.returncode)
        return cp.stdout or ""


def parse_apt_upgradable(text: str) -> PendingCounts:
    """Count ``apt list --upgradable`` lines; origins with ``security`` count as security."""
    total = security = 0
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("Listing...") or not APT_PACKAGE_LINE.match(line):
            continue
        total += 1
        if "security" in line.lower():
            security += 1
    return PendingCounts(all=total, security=security, bugfix=total - security)


def parse_check_update(text: str, skip_prefixes: Sequence[str]) -> int:
    """Count package rows of ``dnf|yum check-update``."""
    total = 0
    for line in text.splitlines():
        line = line.strip()
        if not line or any(line.startswith(prefix) for prefix in skip_prefixes):
            continue
        if line.count(" ") < 2:
            continue
        total += 1
    return total


def parse_zypper_table(text: str, skip_prefixes: Sequence[str] = ("Loading repository data",)) -> int:
    """Count data rows of a zypper ``|``-separated table.

    The first table row is the column header; ``--+--`` rules are skipped.
    """
    total = 0
    header_seen = False
    for line in text.splitlines():
        line = line.strip()
        if not line or any(line.startswith(prefix) for prefix in skip_prefixes):
            continue
        if line.count("|") < 3 or set(line) <= set("-+| "):
            continue
        if not header_seen:
            header_seen = True
            continue
        total += 1
    return total


def count_nonempty_lines(text: str) -> int:
    return sum(1 for line in text.splitlines() if line.strip())


def split_security(total: int, security: int) -> PendingCounts:
    security = min(max(0, security), total)
    return PendingCounts(all=total, security=security, bugfix=total - security)


class PackageBackend(ABC):
    """Capability contract for one OS package manager."""

    name: str = ""
    binaries: tuple[str, ...] = ()

    def available(self, which: Callable[[str], str | None] = shutil.which) -> bool:
        return any(which(binary) for binary in self.binaries)

    @abstractmethod
    def collect_counts(self, runner: CommandRunner) -> PendingCounts:
        raise NotImplementedError

    def list_repo_sources(self, runner: CommandRunner) -> list[str]:
        from . import repo

        return repo.list_sources(self.name, runner)

    def classify_reboot(self, runner: CommandRunner) -> tuple[bool, str]:
        from . import reboot

        return reboot.detect(self.name, runner)

    def metadata_age_seconds(self, now: float | None = None) -> float:
        from . import repo

        return repo.metadata_age_seconds(self.name, now=now)


class AptBackend(PackageBackend):
    name = "apt"
    binaries = ("apt-get", "apt")

    def collect_counts(self, runner: CommandRunner) -> PendingCounts:
        return parse_apt_upgradable(runner.run(["apt", "list", "--upgradable"]))


class DnfBackend(PackageBackend):
    name = "dnf"
    binaries = ("dnf",)
    skip_prefixes: tuple[str, ...] = ("Last metadata",)

    def collect_counts(self, runner: CommandRunner) -> PendingCounts:
        # check-update exits 100 when updates are available.
        out = runner.run([self.name, "-q", "check-update"], ok_codes=(0, 100))
        total = parse_check_update(out, self.skip_prefixes)
        try:
            security = count_nonempty_lines(runner.run([self.name, "-q", "updateinfo", "list", "security"]))
        except CommandError as exc:
            logger.debug("%s security advisories unavailable: %s", self.name, exc)
            security = 0
        return split_security(total, security)


class YumBackend(DnfBackend):
    name = "yum"
    binaries = ("yum",)
    skip_prefixes = ("Loaded plugins",)


class ZypperBackend(PackageBackend):
    name = "zypper"
    binaries = ("zypper",)

    def collect_counts(self, runner: CommandRunner) -> PendingCounts:
        total = parse_zypper_table(runner.run(["zypper", "-q", "lu"], ok_codes=ZYPPER_INFO_CODES))
        try:
            patches = runner.run(["zypper", "-q", "lp", "-g", "security"], ok_codes=ZYPPER_INFO_CODES)
            security = parse_zypper_table(patches)
        except CommandError as exc:
            logger.debug("zypper security patches unavailable: %s", exc)
            security = 0
        return split_security(total, security)


BACKENDS: tuple[PackageBackend, ...] = (AptBackend(), DnfBackend(), YumBackend(), ZypperBackend())


def detect_backend(which: Callable[[str], str | None] = shutil.which) -> PackageBackend | None:
    for backend in BACKENDS:
        if backend.available(which):
            return backend
    return None


def backend_for(name: str) -> PackageBackend | None:
    for backend in BACKENDS:
        if backend.name == name:
            return backend
    return None


def detect_os(os_release: Path = OS_RELEASE) -> tuple[str, str]:
    try:
        text = os_release.read_text(encoding="utf-8")
    except OSError:
        return sys.platform, ""
    name = version = ""
    for line in text.splitlines():
        if line.startswith("NAME=") and not name:
            name = line[len("NAME=") :].strip().strip("\"'")
        if line.startswith("VERSION_ID=") and not version:
            version = line[len("VERSION_ID=") :].strip().strip("\"'")
    return name, version


@dataclass
class RepoResult:
    valid: bool = False
    total: int = 0
    unreachable: int = 0
    metadata_age_seconds: float = 0.0
    head_latency_seconds: float = 0.0
    error: str = ""


@dataclass
class CollectionResult:
    manager: str = "unknown"
    os_name: str = ""
    os_version: str = ""
    pending: PendingCounts = field(default_factory=PendingCounts)
    risk_score: int = 0
    reboot_required: bool = False
    reboot_reason: str = "unknown"
    repo: RepoResult = field(default_factory=RepoResult)
    error: str = ""


def collect(
    timeout_sec: float,
    *,
    backend: PackageBackend | None = None,
    runner: CommandRunner | None = None,
    os_release: Path = OS_RELEASE,
) -> CollectionResult:
    """Collect pending counts and reboot status for the active backend.

    Failures are reported through ``CollectionResult.error``; whatever could
    be gathered is still returned.
    """
    result = CollectionResult()
    result.os_name, result.os_version = detect_os(os_release)
    backend = backend or detect_backend()
    if backend is None:
        result.error = "no supported package manager found"
        return result
    result.manager = backend.name
    runner = runner or CommandRunner(timeout_sec)

    try:
        result.pending = backend.collect_counts(runner).clamped()
    except CommandError as exc:
        logger.warning("%s collection failed: %s", backend.name, exc)
        result.error = str(exc)

    try:
        result.reboot_required, result.reboot_reason = backend.classify_reboot(runner)
    except CommandError as exc:
        logger.warning("reboot classification failed: %s", exc)
    return result
