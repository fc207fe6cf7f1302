"""Repository source discovery and reachability checks.

HEAD requests run sequentially, one HTTP HEAD per distinct source URL. The
configured timeout bounds each request, not the whole stage, so stage latency
grows with the number of configured repositories.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Iterable
from urllib import error as urllib_error
from urllib import request as urllib_request

from .collector import CommandRunner, RepoResult, backend_for
from .errors import CommandError, RepoCheckError


logger = logging.getLogger(__name__)

APT_SOURCES_LIST = Path("/etc/apt/sources.list")
APT_SOURCES_DIR = Path("/etc/apt/sources.list.d")
YUM_REPOS_DIR = Path("/etc/yum.repos.d")
APT_LISTS_DIR = Path("/var/lib/apt/lists")
RPM_CACHE_DIRS = {
    "dnf": (Path("/var/cache/dnf"), Path("/var/cache/yum")),
    "yum": (Path("/var/cache/dnf"), Path("/var/cache/yum")),
    "zypper": (Path("/var/cache/zypp"),),
}


def _is_http(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def unique(urls: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for url in urls:
        url = url.strip()
        if not url or url in seen:
            continue
        seen.add(url)
        out.append(url)
    return out


def parse_apt_list(text: str) -> list[str]:
    """One-line ``deb``/``deb-src`` entries; the first http(s) field is the URI."""
    out: list[str] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if not (line.startswith("deb ") or line.startswith("deb-src ")):
            continue
        for token in line.split():
            if _is_http(token):
                out.append(token)
                break
    return out


def parse_deb822_sources(text: str) -> list[str]:
    out: list[str] = []
    for line in text.splitlines():
        line = line.strip()
        if line.lower().startswith("uris:"):
            out.extend(token for token in line[len("uris:") :].split() if _is_http(token))
    return out


def parse_yum_repo(text: str) -> list[str]:
    out: list[str] = []
    for line in text.splitlines():
        line = line.strip()
        for key in ("baseurl=", "mirrorlist="):
            if not line.startswith(key):
                continue
            value = line[len(key) :].split()
            if value and value[0].startswith("http"):
                out.append(value[0])
    return out


def parse_zypper_repos(text: str) -> list[str]:
    """URIs from ``zypper lr -u``; the last http field of a row wins."""
    out: list[str] = []
    for line in text.splitlines():
        if "http://" not in line and "https://" not in line:
            continue
        for token in reversed(line.split()):
            if token.startswith("http"):
                out.append(token)
                break
    return out


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.debug("skipping unreadable source file %s: %s", path, exc)
        return ""


def apt_sources(sources_list: Path = APT_SOURCES_LIST, sources_dir: Path = APT_SOURCES_DIR) -> list[str]:
    urls = parse_apt_list(_read(sources_list)) if sources_list.exists() else []
    if sources_dir.is_dir():
        for path in sorted(sources_dir.rglob("*")):
            if not path.is_file():
                continue
            if path.suffix == ".list":
                urls.extend(parse_apt_list(_read(path)))
            elif path.suffix == ".sources":
                urls.extend(parse_deb822_sources(_read(path)))
    return urls


def yum_sources(repos_dir: Path = YUM_REPOS_DIR) -> list[str]:
    urls: list[str] = []
    if repos_dir.is_dir():
        for path in sorted(repos_dir.rglob("*.repo")):
            if path.is_file():
                urls.extend(parse_yum_repo(_read(path)))
    return urls


def list_sources(manager: str, runner: CommandRunner) -> list[str]:
    if manager == "apt":
        return unique(apt_sources())
    if manager in {"dnf", "yum"}:
        return unique(yum_sources())
    if manager == "zypper":
        try:
            out = runner.run(["zypper", "lr", "-u"], ok_codes=(0, *range(100, 107)))
        except CommandError as exc:
            raise RepoCheckError(f"cannot list zypper repositories: {exc}") from exc
        return unique(parse_zypper_repos(out))
    return []


def _newest_mtime_age(paths: Iterable[Path], now: float) -> float:
    max_age = 0.0
    for path in paths:
        try:
            mtime = path.stat().st_mtime
        except OSError:
            continue
        max_age = max(max_age, now - mtime)
    return max_age


def metadata_age_seconds(
    manager: str,
    *,
    now: float | None = None,
    apt_lists_dir: Path = APT_LISTS_DIR,
    cache_dirs: dict[str, tuple[Path, ...]] | None = None,
) -> float:
    """Age of the stalest cached repository metadata file."""
    now = time.time() if now is None else now
    if manager == "apt":
        return _newest_mtime_age(apt_lists_dir.glob("*Release"), now)
    roots = (cache_dirs or RPM_CACHE_DIRS).get(manager, ())
    candidates: list[Path] = []
    for root in roots:
        if root.is_dir():
            candidates.extend(p for p in root.rglob("repomd.xml") if p.is_file())
    return _newest_mtime_age(candidates, now)


def head_request(url: str, timeout_sec: float) -> tuple[bool, float]:
    """HEAD ``url``; returns ``(reachable, latency_seconds)``."""
    req = urllib_request.Request(
        url,
        method="HEAD",
        headers={"User-Agent": "os-updates-exporter/repo-check"},
    )
    started = time.monotonic()
    try:
        with urllib_request.urlopen(req, timeout=timeout_sec) as resp:
            status = int(getattr(resp, "status", 200))
        return status < 400, time.monotonic() - started
    except urllib_error.HTTPError:
        return False, time.monotonic() - started
    except (urllib_error.URLError, TimeoutError, OSError, ValueError) as exc:
        logger.debug("repo HEAD %s failed: %s", url, exc)
        return False, time.monotonic() - started


def check_repos(
    manager: str,
    timeout_sec: float,
    *,
    runner: CommandRunner | None = None,
    head: Callable[[str, float], tuple[bool, float]] = head_request,
    now: float | None = None,
) -> RepoResult:
    """HEAD every configured repository of ``manager`` in turn."""
    backend = backend_for(manager)
    if backend is None:
        return RepoResult(valid=False)
    runner = runner or CommandRunner(timeout_sec)
    urls = backend.list_repo_sources(runner)

    unreachable = 0
    latency_sum = 0.0
    for url in urls:
        reachable, latency = head(url, timeout_sec)
        latency_sum += latency
        if not reachable:
            unreachable += 1

    return RepoResult(
        valid=True,
        total=len(urls),
        unreachable=unreachable,
        metadata_age_seconds=backend.metadata_age_seconds(now=now),
        head_latency_seconds=latency_sum / len(urls) if urls else 0.0,
    )
