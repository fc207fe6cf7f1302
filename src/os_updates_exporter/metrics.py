"""Prometheus textfile snapshot builder.

``MetricsRegistry`` wraps a per-run ``prometheus_client.CollectorRegistry``.
Gauges are registered on first use, so families render in the order they were
first set; setting an existing series replaces its value, so a snapshot can be
re-rendered after late failures without duplicate samples.
"""

from __future__ import annotations

import datetime as dt
from pathlib import Path

from prometheus_client import CollectorRegistry, Gauge, generate_latest

from .atomicio import write_text_atomic
from .errors import MetricsWriteError


EXPORTER_NAME = "os-updates-exporter"
REBOOT_REASONS = ("kernel", "libc", "systemd", "other", "unknown")
STAGES = ("lock", "state", "pkgmgr", "repo", "write")
FATAL_STAGES = ("lock", "write")
SOFT_STAGES = ("pkgmgr", "repo", "state")


def _flag(on: bool) -> int:
    return 1 if on else 0


class MetricsRegistry:
    def __init__(self) -> None:
        self.registry = CollectorRegistry()
        self._gauges: dict[str, Gauge] = {}
        self._stage_errors: dict[str, bool] = {}
        self._scrape_success: bool | None = None

    def _set(self, name: str, help_text: str, value: float, **labels: str) -> None:
        gauge = self._gauges.get(name)
        if gauge is None:
            gauge = Gauge(name, help_text, labelnames=tuple(labels), registry=self.registry)
            self._gauges[name] = gauge
        if labels:
            gauge.labels(**labels).set(value)
        else:
            gauge.set(value)

    def set_build_info(self, version: str, commit: str, runtime_version: str) -> None:
        self._set(
            "os_updates_build_info",
            "Build information for os-updates-exporter",
            1,
            version=version,
            commit=commit,
            go_version=runtime_version,
        )

    def set_info(self, manager: str, output_dir: str, os_name: str, os_version: str, threshold: int) -> None:
        self._set(
            "os_updates_info",
            "Static host/exporter information",
            1,
            manager=manager,
            exporter=EXPORTER_NAME,
            output_dir=output_dir,
            os=os_name,
            os_version=os_version,
            threshold=str(threshold),
        )

    def set_pending(self, manager: str, kind: str, value: int) -> None:
        self._set("os_pending_updates", "Number of pending updates", int(value), manager=manager, type=kind)

    def set_new_pending(self, manager: str, kind: str, value: int) -> None:
        self._set(
            "os_new_pending_updates",
            "New pending updates since last run",
            int(value),
            manager=manager,
            type=kind,
        )

    def set_oldest_age(self, manager: str, kind: str, seconds: float) -> None:
        self._set(
            "os_pending_update_oldest_seconds",
            "Age of oldest pending update (best-effort, state based)",
            round(seconds),
            manager=manager,
            type=kind,
        )

    def set_reboot(self, required: bool) -> None:
        self._set("os_pending_reboots", "Whether a reboot is required", _flag(required))

    def set_reboot_reason(self, reason: str) -> None:
        current = reason.strip().lower() or "unknown"
        if current not in REBOOT_REASONS:
            current = "other"
        for item in REBOOT_REASONS:
            self._set("os_reboot_required", "Reboot reason (one-hot)", _flag(item == current), reason=item)

    def set_maintenance_window(self, inside: bool) -> None:
        self._set(
            "os_updates_in_maintenance_window",
            "Whether host is currently in maintenance window",
            _flag(inside),
        )

    def set_compliant(self, ok: bool) -> None:
        self._set("os_updates_compliant", "Compliance according to patch threshold", _flag(ok))

    def set_compliant_effective(self, ok: bool) -> None:
        self._set(
            "os_updates_compliant_effective",
            "Compliance considering maintenance window and type thresholds",
            _flag(ok),
        )

    def set_risk_score(self, manager: str, value: int) -> None:
        self._set(
            "os_updates_risk_score",
            "Weighted risk score for pending updates",
            int(value),
            manager=manager,
        )

    def set_repo_totals(self, manager: str, total: int, unreachable: int) -> None:
        self._set("os_repo_total", "Total repositories detected", int(total), manager=manager)
        self._set(
            "os_repo_unreachable",
            "Repositories unreachable in this run",
            int(unreachable),
            manager=manager,
        )

    def set_repo_newly_unreachable(self, manager: str, value: int) -> None:
        self._set(
            "os_repo_newly_unreachable",
            "Newly unreachable repos since last run (best-effort)",
            int(value),
            manager=manager,
        )

    def set_repo_metadata_age(self, manager: str, seconds: float) -> None:
        self._set(
            "os_repo_metadata_age_seconds",
            "Repository metadata age in seconds (best-effort, max)",
            round(seconds),
            manager=manager,
        )

    def set_repo_head_latency(self, manager: str, seconds: float) -> None:
        self._set(
            "os_repo_head_latency_seconds",
            "HTTP HEAD latency in seconds (best-effort, avg)",
            round(seconds, 3),
            manager=manager,
        )

    def declare_stages(self, stages: tuple[str, ...] = STAGES) -> None:
        for stage in stages:
            self.set_stage_error(stage, self._stage_errors.get(stage, False))

    def set_stage_error(self, stage: str, on: bool) -> None:
        self._stage_errors[stage] = bool(on)
        self._set("os_updates_error", "Stage error indicator (one series per stage)", _flag(on), stage=stage)

    def stage_errors(self) -> dict[str, bool]:
        return dict(self._stage_errors)

    def set_scrape_success(self, ok: bool) -> None:
        self._scrape_success = bool(ok)
        self._set(
            "os_updates_scrape_success",
            "1 if metrics were collected and written successfully",
            _flag(ok),
        )

    @property
    def scrape_success(self) -> bool | None:
        return self._scrape_success

    def has_fail_closed(self, fail_open: bool) -> bool:
        """Whether the recorded stage errors force an unsuccessful run."""
        if any(self._stage_errors.get(stage) for stage in FATAL_STAGES):
            return True
        if not fail_open and any(self._stage_errors.get(stage) for stage in SOFT_STAGES):
            return True
        return False

    def set_last_run(self, when: dt.datetime | float) -> None:
        ts = when.timestamp() if isinstance(when, dt.datetime) else float(when)
        self._set(
            "os_updates_last_run_timestamp_seconds",
            "Last run end time (unix seconds)",
            int(ts),
        )

    def set_stage_duration(self, stage: str, seconds: float) -> None:
        self._set(
            "os_updates_stage_duration_seconds",
            "Run duration per stage",
            round(seconds, 3),
            stage=stage,
        )

    def set_run_duration(self, seconds: float) -> None:
        self._set("os_updates_run_duration_seconds", "Total run duration", round(seconds, 3))
        self.set_stage_duration("total", seconds)

    def render(self) -> str:
        return generate_latest(self.registry).decode("utf-8")


def write_textfile(path: Path, content: str, mode: int = 0o640) -> None:
    try:
        write_text_atomic(Path(path), content, mode=mode, dir_mode=0o755)
    except OSError as exc:
        raise MetricsWriteError(f"cannot write metrics {path}: {exc}") from exc
