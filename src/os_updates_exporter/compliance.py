"""Compliance policy: growth, risk weighting and threshold verdicts.

Every function here is pure; the caller supplies counts, thresholds and
whether the host is currently inside its maintenance window.
"""

from __future__ import annotations

from dataclasses import dataclass


SECURITY_WEIGHT = 5
BUGFIX_WEIGHT = 1
KERNEL_REASON = "kernel"


@dataclass(frozen=True)
class PendingCounts:
    all: int = 0
    security: int = 0
    bugfix: int = 0

    def clamped(self) -> "PendingCounts":
        return PendingCounts(max(0, self.all), max(0, self.security), max(0, self.bugfix))

    def get(self, category: str) -> int:
        if category not in {"all", "security", "bugfix"}:
            raise ValueError(f"unknown update category: {category!r}")
        return int(getattr(self, category))


@dataclass(frozen=True)
class Thresholds:
    """Patch thresholds; a category threshold <= 0 is not configured."""
    global_threshold: int
    security: int = 0
    bugfix: int = 0

    @property
    def has_category_thresholds(self) -> bool:
        return self.security > 0 or self.bugfix > 0


@dataclass(frozen=True)
class ComplianceVerdict:
    baseline: bool
    effective: bool
    in_maintenance_window: bool


def new_pending(current: int, previous: int) -> int:
    """Growth since the previous observation, never negative."""
    return max(0, int(current) - int(previous))


def risk_score(pending: PendingCounts, reboot_reason: str = "") -> int:
    score = pending.bugfix * BUGFIX_WEIGHT + pending.security * SECURITY_WEIGHT
    # Pending kernel reboot: security updates weigh double.
    if reboot_reason.strip().lower() == KERNEL_REASON and pending.security > 0:
        score += pending.security * SECURITY_WEIGHT
    return score


def baseline_compliant(pending: PendingCounts, thresholds: Thresholds) -> bool:
    return pending.all <= thresholds.global_threshold


def effective_compliant(pending: PendingCounts, thresholds: Thresholds, in_window: bool) -> bool:
    """Layered policy verdict.

    Without category thresholds the global threshold applies, doubled inside
    a maintenance window. With category thresholds each configured category
    gets a margin of 1 inside the window, and the global threshold (doubled
    inside the window) stays as a safety net.
    """
    global_limit = thresholds.global_threshold * 2 if in_window else thresholds.global_threshold
    if not thresholds.has_category_thresholds:
        return pending.all <= global_limit

    margin = 1 if in_window else 0
    if thresholds.security > 0 and pending.security > thresholds.security + margin:
        return False
    if thresholds.bugfix > 0 and pending.bugfix > thresholds.bugfix + margin:
        return False
    return pending.all <= global_limit


def evaluate(pending: PendingCounts, thresholds: Thresholds, in_window: bool) -> ComplianceVerdict:
    return ComplianceVerdict(
        baseline=baseline_compliant(pending, thresholds),
        effective=effective_compliant(pending, thresholds, in_window),
        in_maintenance_window=in_window,
    )
