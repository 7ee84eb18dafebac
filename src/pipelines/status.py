"""
Pipeline status state machine.

Every status change for a run goes through `transition()`, which rejects
moves the phase order does not allow. `StatusTracker` owns the single record
of a run and mirrors each change to the status store.
"""

import logging
from typing import Optional

from src.agents.state import PipelineError, PipelineStatus, PipelineStatusRecord, now_ms
from src.pipelines.collaborators import StatusStore

logger = logging.getLogger(__name__)

S = PipelineStatus

# Maps status -> statuses reachable from it (ERROR is reachable from all
# non-terminal states; PENDING from terminal states only through retry)
ALLOWED_TRANSITIONS: dict[PipelineStatus, set[PipelineStatus]] = {
    S.PENDING: {S.DECOMPOSITION},
    S.DECOMPOSITION: {S.RESEARCH},
    S.RESEARCH: {S.ANALYSIS},
    S.ANALYSIS: {S.VALIDATION},
    S.VALIDATION: {S.ANALYSIS, S.PROGRESS, S.COMPLETE},
    S.PROGRESS: {S.COMPLETE},
    S.COMPLETE: set(),
    S.ERROR: set(),
}
TERMINAL_STATUSES = {S.COMPLETE, S.ERROR}


def can_transition(current: PipelineStatus, new: PipelineStatus, retry: bool = False) -> bool:
    if current in TERMINAL_STATUSES:
        return retry and new == S.PENDING
    if new == S.ERROR or new == current:
        return True
    return new in ALLOWED_TRANSITIONS[current]


def transition(
    record: PipelineStatusRecord,
    new_status: PipelineStatus,
    current_agent: Optional[str] = None,
    revision_count: Optional[int] = None,
    error: Optional[PipelineError] = None,
    retry: bool = False,
) -> PipelineStatusRecord:
    """
    Move a status record to a new status.

    Args:
        retry: Set only by the retry entry point; allows complete/error → pending

    Returns:
        A new record; the input record is not modified

    Raises:
        ValueError: If the move is not allowed from the current status
    """
    if not can_transition(record.status, new_status, retry):
        raise ValueError(
            f"Illegal status transition for {record.session_id}: "
            f"{record.status.value} → {new_status.value}"
        )

    update = {"status": new_status, "current_agent": current_agent, "updated_at": now_ms()}
    if revision_count is not None:
        update["revision_count"] = revision_count
    if new_status == S.ERROR:
        update["error"] = error
    elif new_status == S.PENDING:
        update["error"] = None
    return record.model_copy(update=update)


class StatusTracker:
    """
    Single writer of a run's status record.

    Store writes are advisory: a failing store is logged and the in-run
    record still advances.
    """

    def __init__(self, session_id: str, store: Optional[StatusStore] = None,
                 record: Optional[PipelineStatusRecord] = None):
        self.store = store
        self.record = record or PipelineStatusRecord(session_id=session_id)

    @property
    def status(self) -> PipelineStatus:
        return self.record.status

    def advance(self, new_status: PipelineStatus, current_agent: Optional[str] = None,
                revision_count: Optional[int] = None, error: Optional[PipelineError] = None,
                retry: bool = False) -> PipelineStatusRecord:
        self.record = transition(
            self.record, new_status, current_agent, revision_count, error, retry
        )
        logger.info(
            "[%s] status → %s%s",
            self.record.session_id, new_status.value,
            f" ({current_agent})" if current_agent else "",
        )
        self.persist()
        return self.record

    def persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.upsert_status(
                self.record.session_id,
                self.record.status,
                current_agent=self.record.current_agent,
                revision_count=self.record.revision_count,
                error=self.record.error,
            )
        except Exception as e:
            logger.warning("Status write for %s failed: %s", self.record.session_id, e)
