"""Scan record state machine.

Every change to a record's lifecycle, outcome or acknowledgement columns goes
through a function in this module. State only moves forward::

    QUEUED -> RUNNING -> WAITING_CONFIRMATION -> {SUCCESS, FAILED,
                                                  FAILED_SECURITY, BLOCKED,
                                                  CANCELLED}

Observing a status that maps to the current state or an earlier one is a
no-op, so polls and webhook deliveries can be replayed in any order.

None of these functions perform I/O; callers persist the record.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from scantrack.core.logging import get_logger
from scantrack.engine.cleanup import should_cleanup
from scantrack.engine.normalizer import normalize, severity_counts
from scantrack.models.base import utcnow
from scantrack.models.scan_record import TERMINAL_STATES, ScanMode, ScanRecord, ScanState

logger = get_logger(__name__)

_RANK: dict[ScanState, int] = {
    ScanState.QUEUED: 0,
    ScanState.RUNNING: 1,
    ScanState.WAITING_CONFIRMATION: 2,
    **{state: 3 for state in TERMINAL_STATES},
}

CI_STATUS_MAP: dict[str, ScanState] = {
    "success": ScanState.SUCCESS,
    "passed": ScanState.SUCCESS,
    "manual": ScanState.SUCCESS,
    "failed": ScanState.FAILED,
    "canceled": ScanState.FAILED,
    "cancelled": ScanState.FAILED,
    "skipped": ScanState.FAILED,
    "running": ScanState.RUNNING,
    "pending": ScanState.RUNNING,
    # GitLab states a pipeline passes through before its first job starts
    "created": ScanState.RUNNING,
    "preparing": ScanState.RUNNING,
    "waiting_for_resource": ScanState.RUNNING,
    "scheduled": ScanState.RUNNING,
    # Verdict of the release gate, delivered over the webhook
    "blocked": ScanState.BLOCKED,
}

CANCELLABLE_STATES = frozenset({ScanState.QUEUED, ScanState.RUNNING})
ACKNOWLEDGEABLE_STATES = frozenset({ScanState.FAILED_SECURITY})

# Scanner name -> findings document key
TOOL_SECTIONS: dict[str, str] = {
    "gitleaks": "secrets",
    "semgrep": "static_analysis",
    "trivy": "container",
}


class InvalidTransitionError(Exception):
    """A caller asked for a change the record's current state does not allow."""

    def __init__(self, action: str, current: ScanState, required: Iterable[ScanState]) -> None:
        self.action = action
        self.current = current
        self.required = sorted(required, key=lambda state: (_RANK[state], state.value))
        allowed = ", ".join(state.value for state in self.required)
        super().__init__(
            f"Cannot {action} a scan in state {current.value} (requires {allowed})"
        )

    def to_detail(self) -> dict[str, Any]:
        return {
            "message": str(self),
            "current_state": self.current.value,
            "required_states": [state.value for state in self.required],
        }


class PipelineAlreadyBoundError(ValueError):
    pass


@dataclass(frozen=True)
class Transition:
    previous: ScanState
    current: ScanState
    changed: bool = False
    cleanup_required: bool = False

    @classmethod
    def unchanged(cls, state: ScanState) -> "Transition":
        return cls(previous=state, current=state)


def map_ci_status(status: str | None) -> ScanState:
    """Map a raw CI pipeline status onto a scan state.

    Unrecognized values fail closed to FAILED.
    """
    return CI_STATUS_MAP.get((status or "").strip().lower(), ScanState.FAILED)


def require_state(record: ScanRecord, action: str, allowed: Iterable[ScanState]) -> None:
    allowed = frozenset(allowed)
    if record.state not in allowed:
        raise InvalidTransitionError(action, record.state, allowed)


def _advance(
    record: ScanRecord,
    target: ScanState,
    *,
    now: datetime | None = None,
    reason: str | None = None,
) -> Transition:
    """Single write path for ``record.state``."""
    previous = record.state
    if _RANK[target] <= _RANK[previous]:
        return Transition.unchanged(previous)

    now = now or utcnow()
    if previous is ScanState.WAITING_CONFIRMATION and target is ScanState.SUCCESS:
        # The only way out of the push gate into SUCCESS is the push job finishing
        record.image_pushed = True
    record.state = target
    if record.started_at is None and target is not ScanState.CANCELLED:
        record.started_at = now
    cleanup = False
    if target in TERMINAL_STATES:
        record.completed_at = now
        if reason:
            record.error_message = reason
        cleanup = should_cleanup(target, record.vuln_critical)

    logger.info(
        "Scan state changed",
        scan_id=str(record.id),
        pipeline_id=record.external_pipeline_id,
        previous=previous.value,
        current=target.value,
        reason=reason,
    )
    return Transition(previous=previous, current=target, changed=True, cleanup_required=cleanup)


def _resolve_ci_target(record: ScanRecord, status: str | None) -> ScanState:
    target = map_ci_status(status)
    if (status or "").strip().lower() == "manual" and record.scan_mode is ScanMode.SCAN_AND_BUILD:
        target = ScanState.WAITING_CONFIRMATION
    if target in (ScanState.SUCCESS, ScanState.WAITING_CONFIRMATION) and record.vuln_critical > 0:
        target = ScanState.FAILED_SECURITY
    return target


def observe_ci_status(record: ScanRecord, status: str | None, *, now: datetime | None = None) -> Transition:
    """Apply a pipeline status reported by the CI system (poll or webhook)."""
    target = _resolve_ci_target(record, status)
    reason = None
    if target is ScanState.FAILED:
        reason = f"Pipeline finished with status {status!r}"
    return _advance(record, target, now=now, reason=reason)


def mark_pipeline_missing(record: ScanRecord, *, now: datetime | None = None) -> Transition:
    """The CI system confirmed the pipeline does not exist (404)."""
    return _advance(record, ScanState.FAILED, now=now, reason="Pipeline not found in CI")


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_stalled(record: ScanRecord, max_runtime: timedelta, *, now: datetime | None = None) -> bool:
    """RUNNING past ``max_runtime``, or QUEUED that long without ever being dispatched."""
    if record.state is ScanState.RUNNING:
        since = record.started_at
    elif record.state is ScanState.QUEUED and record.external_pipeline_id is None:
        # The background dispatch was lost, e.g. the process restarted before it ran
        since = record.created_at
    else:
        return False
    if since is None:
        return False
    now = now or utcnow()
    return now - _aware(since) > max_runtime


def expire_stalled(
    record: ScanRecord, max_runtime: timedelta, *, now: datetime | None = None
) -> Transition:
    """Fail a record stuck in RUNNING, or never dispatched, for longer than ``max_runtime``."""
    if not is_stalled(record, max_runtime, now=now):
        return Transition.unchanged(record.state)
    if record.state is ScanState.QUEUED:
        return _advance(record, ScanState.FAILED, now=now, reason="Scan was never dispatched to CI")
    return _advance(record, ScanState.FAILED, now=now, reason="Pipeline exceeded maximum runtime")


def request_cancel(record: ScanRecord, *, now: datetime | None = None) -> Transition:
    require_state(record, "cancel", CANCELLABLE_STATES)
    return _advance(record, ScanState.CANCELLED, now=now, reason="Cancelled by user")


def fail_dispatch(record: ScanRecord, message: str, *, now: datetime | None = None) -> Transition:
    return _advance(record, ScanState.FAILED, now=now, reason=f"Pipeline trigger failed: {message}")


def bind_pipeline(record: ScanRecord, pipeline_id: str, web_url: str | None = None) -> None:
    """Attach the CI-assigned pipeline id. It can be set once and never changed."""
    pipeline_id = str(pipeline_id)
    if record.external_pipeline_id not in (None, pipeline_id):
        raise PipelineAlreadyBoundError(
            f"Scan {record.id} is already bound to pipeline {record.external_pipeline_id}"
        )
    record.external_pipeline_id = pipeline_id
    if web_url:
        record.pipeline_url = web_url


def recompute_counts(record: ScanRecord) -> None:
    counts = severity_counts(normalize(record.findings))
    record.vuln_critical = counts.critical
    record.vuln_high = counts.high
    record.vuln_medium = counts.medium
    record.vuln_low = counts.low


def record_tool_report(record: ScanRecord, tool: str, report: Any) -> Transition:
    """Store one scanner's report in the findings document and recompute counts.

    A report replaces any earlier report from the same tool, so duplicate
    deliveries are harmless. The state is never changed here; a terminal record
    whose late report introduces critical findings is flagged for cleanup.
    """
    tool = tool.strip().lower()
    key = TOOL_SECTIONS.get(tool)
    if key is None:
        logger.warning("Ignoring report from unknown tool", tool=tool, scan_id=str(record.id))
        return Transition.unchanged(record.state)
    if tool == "trivy" and isinstance(report, dict) and "runs" in report:
        key = "sarif"

    document = dict(record.findings or {})
    if document.get(key) == report:
        return Transition.unchanged(record.state)

    # Cleanup already owed by this state was flagged when the state was entered
    was_due = should_cleanup(record.state, record.vuln_critical)
    document[key] = report
    # Reassign so the JSON column is flagged dirty
    record.findings = document
    recompute_counts(record)

    cleanup = (
        record.state in TERMINAL_STATES
        and not was_due
        and should_cleanup(record.state, record.vuln_critical)
    )
    return Transition(previous=record.state, current=record.state, changed=True, cleanup_required=cleanup)


def apply_ci_event(
    record: ScanRecord,
    status: str | None,
    *,
    tool: str | None = None,
    report: Any = None,
    now: datetime | None = None,
) -> Transition:
    """Apply one CI notification: an optional scanner report, then the status."""
    report_change = Transition.unchanged(record.state)
    if tool and report is not None:
        report_change = record_tool_report(record, tool, report)
    status_change = observe_ci_status(record, status, now=now)
    return Transition(
        previous=report_change.previous,
        current=status_change.current,
        changed=report_change.changed or status_change.changed,
        cleanup_required=report_change.cleanup_required or status_change.cleanup_required,
    )


def acknowledge(
    record: ScanRecord,
    user: str,
    *,
    archive: bool = False,
    now: datetime | None = None,
) -> bool:
    """Acknowledge a FAILED_SECURITY record, optionally hiding it from default views.

    The first acknowledgement wins; repeating it changes nothing. Returns
    whether the record was modified.
    """
    require_state(record, "acknowledge", ACKNOWLEDGEABLE_STATES)
    changed = False
    if not record.is_critical_acknowledged:
        record.is_critical_acknowledged = True
        record.acknowledged_by = user
        record.acknowledged_at = now or utcnow()
        changed = True
    if archive and record.is_latest:
        record.is_latest = False
        changed = True
    if changed:
        logger.info(
            "Scan acknowledged",
            scan_id=str(record.id),
            user=user,
            archived=not record.is_latest,
        )
    return changed
