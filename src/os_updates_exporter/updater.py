"""Self-update from GitHub releases with crash-safe executable replacement.

The update path does not take the scrape lock: a scrape and a self-update
can interleave over the installed executable and the state file.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import platform
import shutil
import tarfile
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable
from urllib import error as urllib_error
from urllib import request as urllib_request

from . import __version__
from .config import ExporterConfig
from .errors import (
    AssetNotFound,
    ChecksumMismatch,
    ExtractFailed,
    NetworkError,
    RenameFailed,
    StateSaveError,
    UpdateError,
)
from .state import load_state, save_state


logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
BINARY_NAME = "os-updates-exporter"
UNPINNED_CHANNELS = {"", "latest", "unset", "0"}
HTTP_TIMEOUT_SEC = 30
_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "i386": "386",
    "i686": "386",
}


def normalize_version(value: str) -> str:
    text = value.strip()
    return text[1:] if text.startswith("v") else text


def release_arch(machine: str | None = None) -> str:
    raw = (machine if machine is not None else platform.machine()).strip().lower()
    return _ARCH_ALIASES.get(raw, raw)


def tag_candidates(tag: str) -> list[str]:
    """Tag spellings to try: exact, ``v``-stripped, ``v``-prefixed."""
    bare = normalize_version(tag)
    out: list[str] = []
    for candidate in (tag.strip(), bare, f"v{bare}"):
        if candidate and candidate not in out:
            out.append(candidate)
    return out


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(archive: Path, checksum_file: Path) -> None:
    try:
        fields = checksum_file.read_text(encoding="utf-8", errors="replace").split()
        if not fields:
            raise ChecksumMismatch(f"invalid checksum file {checksum_file}")
        want = fields[0].strip().lower()
        got = sha256_file(archive)
    except OSError as exc:
        raise ChecksumMismatch(f"cannot read {checksum_file} or {archive}: {exc}") from exc
    if got != want:
        raise ChecksumMismatch(f"sha256 mismatch got={got} want={want}")


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("could not remove %s: %s", path, exc)


def extract_binary(archive: Path, out_path: Path, name: str = BINARY_NAME) -> None:
    """Copy the archive member whose basename is ``name`` to ``out_path``."""
    try:
        with tarfile.open(archive, mode="r:gz") as tar:
            for member in tar:
                if not member.isfile() or Path(member.name).name != name:
                    continue
                source = tar.extractfile(member)
                if source is None:
                    continue
                with source, out_path.open("wb") as target:
                    shutil.copyfileobj(source, target)
                return
    except (tarfile.TarError, OSError, EOFError) as exc:
        raise ExtractFailed(f"cannot extract {name} from {archive}: {exc}") from exc
    raise ExtractFailed(f"binary {name!r} not found in {archive}")


@dataclass(frozen=True)
class CheckResult:
    current: str
    latest: str
    update_available: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RunResult:
    current: str
    latest: str
    updated: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SelfUpdatePipeline:
    def __init__(
        self,
        config: ExporterConfig,
        current_version: str = __version__,
        *,
        urlopen: Callable[..., Any] = urllib_request.urlopen,
        clock: Callable[[], float] = time.time,
        machine: str | None = None,
    ) -> None:
        self.config = config
        self.current = current_version
        self._urlopen = urlopen
        self._clock = clock
        self._machine = machine

    # -- release feed -----------------------------------------------------

    def _request(self, url: str, accept: str) -> urllib_request.Request:
        return urllib_request.Request(
            url,
            method="GET",
            headers={"User-Agent": BINARY_NAME, "Accept": accept},
        )

    def _get_json(self, url: str) -> dict[str, Any]:
        req = self._request(url, "application/vnd.github+json")
        try:
            with self._urlopen(req, timeout=HTTP_TIMEOUT_SEC) as resp:
                payload = json.loads(resp.read().decode("utf-8") or "{}")
        except urllib_error.HTTPError as exc:
            raise NetworkError(f"GitHub API status {exc.code} for {url}") from exc
        except (urllib_error.URLError, TimeoutError, OSError) as exc:
            raise NetworkError(f"GitHub API request failed for {url}: {exc}") from exc
        except ValueError as exc:
            raise NetworkError(f"invalid JSON from {url}: {exc}") from exc
        if not isinstance(payload, dict):
            raise NetworkError(f"unexpected payload from {url}")
        return payload

    def _download(self, url: str, path: Path) -> None:
        req = self._request(url, "application/octet-stream")
        try:
            with self._urlopen(req, timeout=HTTP_TIMEOUT_SEC) as resp, path.open("wb") as handle:
                shutil.copyfileobj(resp, handle)
        except urllib_error.HTTPError as exc:
            raise NetworkError(f"download status {exc.code} for {url}") from exc
        except (urllib_error.URLError, TimeoutError, OSError) as exc:
            raise NetworkError(f"download failed for {url}: {exc}") from exc

    def latest_version(self) -> str:
        channel = self.config.update_channel.strip()
        if channel.lower() not in UNPINNED_CHANNELS:
            return channel
        data = self._get_json(f"{GITHUB_API}/repos/{self.config.github_repo}/releases/latest")
        tag = str(data.get("tag_name") or "").strip()
        if not tag:
            raise NetworkError("empty tag_name from GitHub")
        return tag

    def resolve_asset_urls(self, tag: str, asset: str) -> tuple[str, str]:
        """Return ``(archive_url, checksum_url)`` for ``asset`` in release ``tag``."""
        if not tag.strip():
            raise AssetNotFound("empty release tag")
        release: dict[str, Any] | None = None
        for candidate in tag_candidates(tag):
            try:
                release = self._get_json(f"{GITHUB_API}/repos/{self.config.github_repo}/releases/tags/{candidate}")
            except NetworkError as exc:
                logger.debug("release tag %s not resolved: %s", candidate, exc)
                continue
            break
        if release is None:
            raise AssetNotFound(f"could not resolve release tag {tag}")

        archive_url = checksum_url = ""
        for item in release.get("assets") or []:
            if not isinstance(item, dict):
                continue
            name = str(item.get("name", ""))
            url = str(item.get("browser_download_url", ""))
            if name == asset:
                archive_url = url
            elif name == f"{asset}.sha256":
                checksum_url = url
        if not archive_url:
            raise AssetNotFound(f"asset not found: {asset}")
        if self.config.checksum_required and not checksum_url:
            raise AssetNotFound(f"checksum asset not found: {asset}.sha256")
        return archive_url, checksum_url

    # -- commands -----------------------------------------------------------

    def check(self) -> CheckResult:
        latest = self.latest_version()
        available = bool(latest) and normalize_version(latest) != normalize_version(self.current)
        return CheckResult(current=self.current, latest=latest, update_available=available)

    def run(self) -> RunResult:
        update_available = False
        success = False
        try:
            checked = self.check()
            update_available = checked.update_available
            if not checked.update_available:
                success = True
                return RunResult(current=checked.current, latest=checked.latest, updated=False)
            self._install(checked.latest)
            success = True
            logger.info("updated %s from %s to %s", self.config.install_path, checked.current, checked.latest)
            return RunResult(current=checked.current, latest=checked.latest, updated=True)
        finally:
            self._persist_status(update_available, success)

    def _install(self, tag: str) -> None:
        cfg = self.config
        asset = f"{cfg.asset_prefix}{release_arch(self._machine)}.tar.gz"
        archive_url, checksum_url = self.resolve_asset_urls(tag, asset)

        try:
            cfg.update_tmp_dir.mkdir(parents=True, exist_ok=True, mode=0o750)
        except OSError as exc:
            raise UpdateError(f"cannot create update dir {cfg.update_tmp_dir}: {exc}") from exc
        archive = cfg.update_tmp_dir / asset
        checksum_file = archive.with_name(f"{asset}.sha256")
        try:
            self._download(archive_url, archive)
            if cfg.checksum_required:
                if not checksum_url:
                    raise ChecksumMismatch("checksum required but checksum URL is empty")
                self._download(checksum_url, checksum_file)
                verify_checksum(archive, checksum_file)
            self._stage(archive)
        finally:
            _discard(archive)
            _discard(checksum_file)

    def _stage(self, archive: Path) -> None:
        target = self.config.install_path
        staged = target.parent / f".{target.name}.new"
        backup = target.with_name(f"{target.name}.bak")
        try:
            target.parent.mkdir(parents=True, exist_ok=True, mode=0o755)
            staged.unlink(missing_ok=True)
        except OSError as exc:
            raise UpdateError(f"cannot prepare {target.parent}: {exc}") from exc
        try:
            extract_binary(archive, staged)
            try:
                staged.chmod(0o755)
            except OSError as exc:
                raise UpdateError(f"cannot make {staged} executable: {exc}") from exc
            self._replace(staged, target, backup)
        finally:
            _discard(staged)

    @staticmethod
    def _replace(staged: Path, target: Path, backup: Path) -> None:
        """Swap ``staged`` onto ``target``, restoring ``backup`` if that fails."""
        try:
            backup.unlink(missing_ok=True)
        except OSError as exc:
            raise UpdateError(f"cannot remove stale backup {backup}: {exc}") from exc
        try:
            os.replace(target, backup)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("could not back up %s: %s", target, exc)
        try:
            os.replace(staged, target)
        except OSError as exc:
            if backup.exists():
                try:
                    os.replace(backup, target)
                except OSError as restore_exc:
                    logger.error("restore of %s from %s failed: %s", target, backup, restore_exc)
            raise RenameFailed(f"rename {staged} -> {target} failed: {exc}") from exc

    def _persist_status(self, update_available: bool, success: bool) -> None:
        state = load_state(self.config.state_file)
        now = int(self._clock())
        state.last_update_check_ts = now
        state.last_update_available = update_available
        state.last_update_run_ts = now
        state.last_update_run_success = success
        try:
            save_state(self.config.state_file, state)
        except StateSaveError as exc:
            logger.warning("updater status not persisted: %s", exc)
