"""Scrape run orchestration and cross-run state reconciliation.

A run takes the exclusivity lock, loads the previous snapshot, collects
pending counts, optionally checks repositories, derives growth, aging, risk
and compliance, writes the metrics textfile and persists the new state.
Stage failures are recorded and the run continues with whatever data is
available; only the lock and the metrics write are fatal.
"""

from __future__ import annotations

import datetime as dt
import logging
import platform
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from . import __commit__, __version__
from . import collector as collector_mod
from . import repo as repo_mod
from .collector import CollectionResult, RepoResult
from .compliance import Thresholds, evaluate, new_pending, risk_score
from .config import ExporterConfig
from .errors import (
    EXIT_LOCK_BUSY,
    EXIT_METRICS_WRITE,
    EXIT_OK,
    EXIT_STATE_SAVE,
    ExporterError,
    LockError,
    MetricsWriteError,
    StateLoadError,
    StateSaveError,
)
from .lock import acquire_lock
from .metrics import MetricsRegistry, write_textfile
from .state import CATEGORIES, PersistentState, load_state, save_state


logger = logging.getLogger(__name__)

Collector = Callable[[ExporterConfig], CollectionResult]
RepoChecker = Callable[[ExporterConfig, str], RepoResult]


def default_collector(config: ExporterConfig) -> CollectionResult:
    return collector_mod.collect(config.pkgmgr_timeout_sec)


def default_repo_checker(config: ExporterConfig, manager: str) -> RepoResult:
    return repo_mod.check_repos(manager, config.repo_head_timeout_sec)


@dataclass
class RunReport:
    exit_code: int
    success: bool
    stage_errors: dict[str, bool] = field(default_factory=dict)
    result: CollectionResult | None = None
    rendered: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ok": self.exit_code == EXIT_OK and self.success,
            "exit_code": self.exit_code,
            "scrape_success": self.success,
            "stage_errors": sorted(stage for stage, on in self.stage_errors.items() if on),
        }
        if self.result is not None:
            payload.update(
                {
                    "manager": self.result.manager,
                    "pending_all": self.result.pending.all,
                    "pending_security": self.result.pending.security,
                    "pending_bugfix": self.result.pending.bugfix,
                    "risk_score": self.result.risk_score,
                    "reboot_required": self.result.reboot_required,
                }
            )
        return payload


class RunOrchestrator:
    def __init__(
        self,
        config: ExporterConfig,
        *,
        collector: Collector = default_collector,
        repo_checker: RepoChecker = default_repo_checker,
        version: str = __version__,
        commit: str = __commit__,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        local_now: Callable[[], dt.datetime] = dt.datetime.now,
    ) -> None:
        self.config = config
        self._collector = collector
        self._repo_checker = repo_checker
        self._version = version
        self._commit = commit
        self._clock = clock
        self._monotonic = monotonic
        self._local_now = local_now

    @contextmanager
    def _timed(self, registry: MetricsRegistry, stage: str) -> Iterator[None]:
        started = self._monotonic()
        try:
            yield
        finally:
            registry.set_stage_duration(stage, self._monotonic() - started)

    def _write(self, registry: MetricsRegistry) -> None:
        write_textfile(self.config.textfile_path, registry.render(), self.config.file_mode)

    def _report(self, exit_code: int, registry: MetricsRegistry, result: CollectionResult | None) -> RunReport:
        return RunReport(
            exit_code=exit_code,
            success=bool(registry.scrape_success),
            stage_errors=registry.stage_errors(),
            result=result,
            rendered=registry.render(),
        )

    def run(self) -> RunReport:
        cfg = self.config
        started = self._monotonic()
        registry = MetricsRegistry()
        registry.set_build_info(self._version, self._commit, platform.python_version())
        registry.declare_stages()

        lock_started = self._monotonic()
        try:
            lock = acquire_lock(cfg.lock_file)
        except LockError as exc:
            logger.error("cannot acquire run lock: %s", exc)
            registry.set_stage_error("lock", True)
            registry.set_scrape_success(False)
            registry.set_stage_duration("lock", self._monotonic() - lock_started)
            registry.set_run_duration(self._monotonic() - started)
            # Written without the lock: the holder's snapshot is replaced by
            # this error-only one until the holder's own write lands.
            try:
                self._write(registry)
            except MetricsWriteError as write_exc:
                logger.error("%s", write_exc)
            return self._report(EXIT_LOCK_BUSY, registry, None)
        registry.set_stage_duration("lock", self._monotonic() - lock_started)

        with lock:
            return self._run_locked(registry, started)

    def _run_locked(self, registry: MetricsRegistry, started: float) -> RunReport:
        cfg = self.config

        with self._timed(registry, "state"):
            try:
                state = load_state(cfg.state_file, strict=True)
            except StateLoadError as exc:
                logger.warning("%s; continuing with fresh state", exc)
                registry.set_stage_error("state", True)
                state = PersistentState()

        with self._timed(registry, "pkgmgr"):
            result = self._collect()
            if result.error:
                registry.set_stage_error("pkgmgr", True)

        with self._timed(registry, "repo"):
            if not cfg.offline_mode:
                result.repo = self._check_repos(result.manager)
                if result.repo.error:
                    registry.set_stage_error("repo", True)

        manager = result.manager
        pending = result.pending
        registry.set_info(manager, str(cfg.textfile_dir), result.os_name, result.os_version, cfg.patch_threshold)
        for category in ("security", "bugfix", "all"):
            registry.set_pending(manager, category, pending.get(category))

        previous = state.get_manager(manager)
        registry.set_new_pending(manager, "security", new_pending(pending.security, previous.pending_security))
        registry.set_new_pending(manager, "bugfix", new_pending(pending.bugfix, previous.pending_bugfix))
        registry.set_new_pending(manager, "all", new_pending(pending.all, previous.pending_all))
        previous_repo_total = previous.repo_total
        previous_repo_unreachable = previous.repo_unreachable

        now = int(self._clock())
        for category in CATEGORIES:
            age = state.update_oldest_seen(manager, category, pending.get(category), now)
            registry.set_oldest_age(manager, category, age)

        if result.repo.valid:
            registry.set_repo_totals(manager, result.repo.total, result.repo.unreachable)
            registry.set_repo_newly_unreachable(manager, new_pending(result.repo.unreachable, previous_repo_unreachable))
            registry.set_repo_metadata_age(manager, result.repo.metadata_age_seconds)
            registry.set_repo_head_latency(manager, result.repo.head_latency_seconds)

        result.risk_score = risk_score(pending, result.reboot_reason)
        in_window = cfg.in_maintenance_window(self._local_now())
        verdict = evaluate(
            pending,
            Thresholds(cfg.patch_threshold, cfg.patch_threshold_security, cfg.patch_threshold_bugfix),
            in_window,
        )
        registry.set_reboot(result.reboot_required)
        registry.set_reboot_reason(result.reboot_reason)
        registry.set_maintenance_window(verdict.in_maintenance_window)
        registry.set_compliant(verdict.baseline)
        registry.set_compliant_effective(verdict.effective)
        registry.set_risk_score(manager, result.risk_score)

        registry.set_last_run(self._clock())
        registry.set_run_duration(self._monotonic() - started)
        registry.set_scrape_success(not registry.has_fail_closed(cfg.fail_open))

        write_started = self._monotonic()
        try:
            self._write(registry)
        except MetricsWriteError as exc:
            logger.error("%s", exc)
            registry.set_stage_error("write", True)
            registry.set_scrape_success(False)
            registry.set_stage_duration("write", self._monotonic() - write_started)
            try:
                self._write(registry)
            except MetricsWriteError as retry_exc:
                logger.error("metrics re-write failed: %s", retry_exc)
            return self._report(EXIT_METRICS_WRITE, registry, result)
        registry.set_stage_duration("write", self._monotonic() - write_started)

        state.last_run_ts = now
        ms = state.get_manager(manager)
        ms.pending_all = pending.all
        ms.pending_security = pending.security
        ms.pending_bugfix = pending.bugfix
        ms.reboot_required = result.reboot_required
        if result.repo.valid:
            ms.repo_total = result.repo.total
            ms.repo_unreachable = result.repo.unreachable
        else:
            ms.repo_total = previous_repo_total
            ms.repo_unreachable = previous_repo_unreachable
        state.set_manager(manager, ms)
        try:
            save_state(cfg.state_file, state)
        except StateSaveError as exc:
            logger.error("%s; metrics snapshot kept", exc)
            return self._report(EXIT_STATE_SAVE, registry, result)

        logger.info(
            "run complete manager=%s pending=%d security=%d bugfix=%d success=%s",
            manager,
            pending.all,
            pending.security,
            pending.bugfix,
            registry.scrape_success,
        )
        return self._report(EXIT_OK, registry, result)

    def _collect(self) -> CollectionResult:
        try:
            return self._collector(self.config)
        except ExporterError as exc:
            logger.warning("collection failed: %s", exc)
            return CollectionResult(error=str(exc))

    def _check_repos(self, manager: str) -> RepoResult:
        try:
            return self._repo_checker(self.config, manager)
        except (ExporterError, OSError) as exc:
            logger.warning("repository check failed: %s", exc)
            return RepoResult(valid=False, error=str(exc))
