import logging
from dataclasses import dataclass
from datetime import datetime

from procurement.domain import RequestStatus, SetStatus
from procurement.identifiers import SystemClock

logger = logging.getLogger(__name__)

COMPLETED = "completed"
PENDING = "pending"
IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class SetProgress:
    set_id: str
    set_name: str
    total_parts: int
    completed_parts: int
    in_progress_parts: int
    pending_parts: int
    progress_percentage: float
    overall_status: str
    last_updated: datetime


def classify(current_status):
    if current_status == RequestStatus.BRANCH_RECEIVED_CONFIRMED:
        return COMPLETED
    if current_status == RequestStatus.OPERATIONS_SUBMITTED:
        return PENDING
    return IN_PROGRESS


def derive_overall_status(completed_parts, total_parts):
    if total_parts and completed_parts == total_parts:
        return SetStatus.COMPLETE
    if completed_parts > 0:
        return SetStatus.PARTIAL_COMPLETE
    return SetStatus.IN_PROGRESS


def summarize(set_record, members, now) -> SetProgress:
    buckets = {COMPLETED: 0, PENDING: 0, IN_PROGRESS: 0}
    for member in members:
        buckets[classify(member.current_status)] += 1
    total = len(members)
    completed = buckets[COMPLETED]
    return SetProgress(
        set_id=set_record.set_id,
        set_name=set_record.set_name,
        total_parts=total,
        completed_parts=completed,
        in_progress_parts=buckets[IN_PROGRESS],
        pending_parts=buckets[PENDING],
        progress_percentage=(completed / total) * 100 if total else 0.0,
        overall_status=derive_overall_status(completed, total),
        last_updated=now,
    )


class SetAggregator:
    """Read-side view over a set's members.

    Progress is always recomputed from the member requests. The counters
    stored on the set record are a cache written by ``refresh``.
    """

    def __init__(self, gateway, clock=None):
        self.gateway = gateway
        self.clock = clock or SystemClock()

    def items(self, set_id):
        self.gateway.get_set(set_id)
        return self.gateway.find_by_set(set_id)

    def progress(self, set_id) -> SetProgress:
        set_record = self.gateway.get_set(set_id)
        return summarize(set_record, self.gateway.find_by_set(set_id), self.clock.now())

    def refresh(self, set_id) -> SetProgress:
        set_record = self.gateway.get_set(set_id)
        progress = summarize(set_record, self.gateway.find_by_set(set_id), self.clock.now())
        if (
            set_record.overall_status != progress.overall_status
            or set_record.completed_parts_count != progress.completed_parts
        ):
            self.gateway.update_set(
                set_id,
                {
                    "overall_status": progress.overall_status,
                    "completed_parts_count": progress.completed_parts,
                    "updated_at": progress.last_updated,
                },
            )
            logger.info(
                "Set progress refreshed",
                extra={"set_id": set_id, "to_status": progress.overall_status, "count": progress.completed_parts},
            )
        return progress
