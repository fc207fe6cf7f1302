"""Error taxonomy and process exit codes."""

from __future__ import annotations


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_UPDATE_AVAILABLE = 2
EXIT_METRICS_WRITE = 20
EXIT_STATE_SAVE = 21
EXIT_LOCK_BUSY = 75


class ExporterError(RuntimeError):
    """Base class for failures raised by the exporter."""


class ConfigError(ExporterError):
    """Raised when the configuration cannot be used."""


class LockError(ExporterError):
    """Raised when the run lock file cannot be opened or locked."""


class LockBusy(LockError):
    """Raised when another process already holds the run lock."""


class CommandError(ExporterError):
    """Raised when an external command fails, times out or is missing."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class CollectionError(ExporterError):
    """Raised when pending update counts cannot be collected."""


class RepoCheckError(ExporterError):
    """Raised when repository sources cannot be enumerated."""


class StateLoadError(ExporterError):
    """Raised by a strict state load when the file is unreadable or malformed."""


class StateSaveError(ExporterError):
    """Raised when the state file cannot be written."""


class MetricsWriteError(ExporterError):
    """Raised when the metrics textfile cannot be written."""


class UpdateError(ExporterError):
    """Base class for self-update failures."""


class NetworkError(UpdateError):
    """Raised when the release feed or an asset download fails."""


class AssetNotFound(UpdateError):
    """Raised when the release or one of its assets cannot be resolved."""


class ChecksumMismatch(UpdateError):
    """Raised when the downloaded archive does not match its checksum."""


class ExtractFailed(UpdateError):
    """Raised when the executable cannot be extracted from the archive."""


class RenameFailed(UpdateError):
    """Raised when the staged executable cannot be moved onto the live path."""
