"""Durable cross-run snapshot: aging counters, manager history, updater status."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from .atomicio import write_text_atomic
from .errors import StateLoadError, StateSaveError


logger = logging.getLogger(__name__)

STATE_VERSION = 1
CATEGORIES = ("all", "security", "bugfix")

_OLDEST_FIELDS = {
    "all": "oldest_all_seen",
    "security": "oldest_security_seen",
    "bugfix": "oldest_bugfix_seen",
}


def _int_value(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _bool_value(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class ManagerState:
    """Last observation for one package-manager identity."""
    pending_all: int = 0
    pending_security: int = 0
    pending_bugfix: int = 0
    repo_unreachable: int = 0
    repo_total: int = 0
    reboot_required: bool = False
    oldest_all_seen: int = 0
    oldest_security_seen: int = 0
    oldest_bugfix_seen: int = 0

    @classmethod
    def from_dict(cls, raw: Any) -> "ManagerState":
        if not isinstance(raw, dict):
            return cls()
        values: dict[str, Any] = {}
        for item in fields(cls):
            if item.name not in raw:
                continue
            if item.name == "reboot_required":
                values[item.name] = _bool_value(raw[item.name])
            else:
                values[item.name] = max(0, _int_value(raw[item.name]))
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PersistentState:
    version: int = STATE_VERSION
    last_run_ts: int = 0
    managers: dict[str, ManagerState] = field(default_factory=dict)
    last_update_check_ts: int = 0
    last_update_available: bool = False
    last_update_run_ts: int = 0
    last_update_run_success: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "PersistentState":
        managers_raw = raw.get("managers")
        managers: dict[str, ManagerState] = {}
        if isinstance(managers_raw, dict):
            for name, value in managers_raw.items():
                managers[str(name)] = ManagerState.from_dict(value)
        return cls(
            version=_int_value(raw.get("version"), 0) or STATE_VERSION,
            last_run_ts=_int_value(raw.get("last_run_ts")),
            managers=managers,
            last_update_check_ts=_int_value(raw.get("last_update_check_ts")),
            last_update_available=_bool_value(raw.get("last_update_available", False)),
            last_update_run_ts=_int_value(raw.get("last_update_run_ts")),
            last_update_run_success=_bool_value(raw.get("last_update_run_success", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "last_run_ts": self.last_run_ts,
            "managers": {name: ms.to_dict() for name, ms in sorted(self.managers.items())},
            "last_update_check_ts": self.last_update_check_ts,
            "last_update_available": self.last_update_available,
            "last_update_run_ts": self.last_update_run_ts,
            "last_update_run_success": self.last_update_run_success,
        }

    def get_manager(self, name: str) -> ManagerState:
        """Return the stored state for ``name`` or a zero-valued one."""
        return self.managers.get(name) or ManagerState()

    def set_manager(self, name: str, value: ManagerState) -> None:
        self.managers[name] = value

    def oldest(self, manager: str, category: str) -> int:
        return int(getattr(self.get_manager(manager), _oldest_field(category)))

    def update_oldest_seen(self, manager: str, category: str, pending: int, now: int) -> int:
        """Advance the aging timestamp of ``category`` and return its age.

        A zero count clears the timestamp; the first non-zero count stamps
        ``now`` and reports 0; later non-zero counts keep the stamp and
        report ``now - stamp``.
        """
        attr = _oldest_field(category)
        ms = self.get_manager(manager)
        self.set_manager(manager, ms)
        if pending <= 0:
            setattr(ms, attr, 0)
            return 0
        seen = int(getattr(ms, attr))
        if seen == 0:
            setattr(ms, attr, int(now))
            return 0
        return max(0, int(now) - seen)


def _oldest_field(category: str) -> str:
    try:
        return _OLDEST_FIELDS[category]
    except KeyError:
        raise ValueError(f"unknown update category: {category!r}") from None


def load_state(path: Path, *, strict: bool = False) -> PersistentState:
    """Read the state snapshot at ``path``.

    A missing file yields a fresh default. An unreadable or malformed file
    also yields a fresh default unless ``strict`` is set, in which case
    ``StateLoadError`` is raised.
    """
    path = Path(path)
    if not path.exists():
        return PersistentState()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError("state root is not a JSON object")
    except (OSError, ValueError) as exc:
        if strict:
            raise StateLoadError(f"cannot load state {path}: {exc}") from exc
        logger.warning("discarding unreadable state %s: %s", path, exc)
        return PersistentState()
    return PersistentState.from_dict(raw)


def save_state(path: Path, state: PersistentState) -> None:
    payload = json.dumps(state.to_dict(), indent=2, sort_keys=True) + "\n"
    try:
        write_text_atomic(Path(path), payload, mode=0o640)
    except OSError as exc:
        raise StateSaveError(f"cannot save state {path}: {exc}") from exc
