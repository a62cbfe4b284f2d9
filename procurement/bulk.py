import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from django.conf import settings

from procurement import ledger
from procurement.domain import RequestStatus, Transition
from procurement.exceptions import MixedStateError, PartialCommitError, StateMismatch, ValidationError, WorkflowError
from procurement.gateway import PersistenceError
from procurement.identifiers import SystemClock
from procurement.state_machine import RequestStateMachine

logger = logging.getLogger(__name__)

BULK_TRANSITIONS = {
    RequestStatus.OPERATIONS_SUBMITTED: Transition.COMPLETE_PURCHASE_ORDER,
    RequestStatus.PO_COMPLETED: Transition.RECEIVE_AT_WAREHOUSE,
    RequestStatus.WAREHOUSE_RECEIVED: Transition.DISPATCH_TO_BRANCHES,
    RequestStatus.PARTIAL_DISPATCHED: Transition.DISPATCH_TO_BRANCHES,
}

BULK_FIELDS = {
    Transition.COMPLETE_PURCHASE_ORDER: {
        "expected_delivery_date",
        "expected_delivery_quantity",
        "actual_supplier",
        "po_memo",
        "item_group1",
        "item_group2",
        "item_group3",
        "comments",
    },
    Transition.RECEIVE_AT_WAREHOUSE: {"actual_receipt_date", "actual_received_quantity", "comments"},
    Transition.DISPATCH_TO_BRANCHES: {"branch_dispatch_quantities", "dispatch_memo", "tracking_information", "comments"},
}

BULK_COMMENT_PREFIX = "Bulk processing"


def derive_transition(current_status):
    try:
        return BULK_TRANSITIONS[current_status]
    except KeyError:
        raise ValidationError(
            "current_status",
            f"Requests in status {current_status} cannot be processed in bulk.",
            status=current_status,
        ) from None


def shared_status(requests):
    statuses = {request.current_status for request in requests}
    if len(statuses) != 1:
        raise MixedStateError(statuses)
    return statuses.pop()


def initial_input(request, transition, now):
    """Per-request form values before any broadcast or override."""
    if transition == Transition.COMPLETE_PURCHASE_ORDER:
        return {
            "expected_delivery_date": None,
            "expected_delivery_quantity": request.total_requested_quantity,
            "actual_supplier": None,
            "po_memo": "",
        }
    if transition == Transition.RECEIVE_AT_WAREHOUSE:
        expected = request.purchase_order.expected_delivery_quantity if request.purchase_order else None
        return {
            "actual_receipt_date": now,
            "actual_received_quantity": expected if expected is not None else request.total_requested_quantity,
        }
    return {"branch_dispatch_quantities": ledger.initialize(request.branch_requirements, request.ledger)}


@dataclass
class BulkItem:
    request: object
    data: dict


@dataclass
class BulkPlan:
    status: str
    transition: str
    items: list[BulkItem]

    def _check_field(self, name):
        if name not in BULK_FIELDS[self.transition]:
            raise ValidationError(name, f"{name} cannot be set when running {self.transition}.")

    def item(self, request_pk) -> BulkItem:
        for item in self.items:
            if item.request.id == str(request_pk):
                return item
        raise ValidationError("request_ids", f"Request {request_pk} is not part of this batch.", request_pk=str(request_pk))

    def broadcast(self, name, value):
        self._check_field(name)
        if name == "branch_dispatch_quantities":
            raise ValidationError(
                name, "Branch rows differ per request. Use branch toggles or a per-request override."
            )
        for item in self.items:
            item.data[name] = value

    def override(self, request_pk, **fields):
        target = self.item(request_pk)
        for name in fields:
            self._check_field(name)
        rows = fields.pop("branch_dispatch_quantities", None)
        if rows is not None and (isinstance(rows, (str, Mapping)) or not isinstance(rows, Iterable)):
            raise ValidationError("branch_dispatch_quantities", "branch_dispatch_quantities must be a list of branch rows.")
        rows = list(rows or ())
        if any(not isinstance(row, Mapping) for row in rows):
            raise ValidationError("branch_dispatch_quantities", "Each dispatch row must be an object.")
        target.data.update(fields)
        for row in rows:
            branch_id = str(row.get("branch_id") or "")
            current = target.data["branch_dispatch_quantities"]
            if "dispatched_quantity" in row:
                current = ledger.set_dispatched_quantity(current, branch_id, row["dispatched_quantity"])
            if "is_dispatched" in row:
                current = ledger.set_dispatched(current, branch_id, row["is_dispatched"])
            target.data["branch_dispatch_quantities"] = current

    def _require_dispatch(self):
        if self.transition != Transition.DISPATCH_TO_BRANCHES:
            raise ValidationError("branch_name", "Branch toggles only apply to branch dispatch.")

    @property
    def branch_names(self):
        names = []
        for item in self.items:
            for row in item.data.get("branch_dispatch_quantities") or ():
                if row.branch_name not in names:
                    names.append(row.branch_name)
        return names

    def set_branch_dispatched(self, branch_name, dispatched):
        self._require_dispatch()
        rows_per_request = [item.data["branch_dispatch_quantities"] for item in self.items]
        for item, rows in zip(self.items, ledger.set_branch_dispatched_across(rows_per_request, branch_name, dispatched)):
            item.data["branch_dispatch_quantities"] = rows

    def set_dispatched_quantity(self, request_pk, branch_id, quantity):
        self._require_dispatch()
        target = self.item(request_pk)
        target.data["branch_dispatch_quantities"] = ledger.set_dispatched_quantity(
            target.data["branch_dispatch_quantities"], branch_id, quantity
        )

    def is_branch_fully_dispatched(self, branch_name):
        self._require_dispatch()
        return ledger.is_branch_fully_dispatched_across(
            [item.data["branch_dispatch_quantities"] for item in self.items], branch_name
        )


@dataclass
class BulkResult:
    transition: str
    processed: list[str] = field(default_factory=list)
    target_statuses: dict[str, str] = field(default_factory=dict)


class BulkTransitionProcessor:
    def __init__(self, gateway, state_machine=None, clock=None, max_items=None):
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.state_machine = state_machine or RequestStateMachine(gateway, clock=self.clock)
        self.max_items = max_items or getattr(settings, "PROCUREMENT_BULK_MAX_ITEMS", 200)

    def prepare(self, request_pks) -> BulkPlan:
        request_pks = [str(request_pk) for request_pk in request_pks or ()]
        if not request_pks:
            raise ValidationError("request_ids", "Select at least one request.")
        if len(set(request_pks)) != len(request_pks):
            raise ValidationError("request_ids", "Each request can appear only once in a batch.")
        if len(request_pks) > self.max_items:
            raise ValidationError("request_ids", f"At most {self.max_items} requests can be processed at once.")

        requests = self.gateway.get_many(request_pks)
        status = shared_status(requests)
        transition = derive_transition(status)
        now = self.clock.now()
        return BulkPlan(
            status=status,
            transition=transition,
            items=[BulkItem(request=request, data=initial_input(request, transition, now)) for request in requests],
        )

    def commit(self, plan, actor) -> BulkResult:
        request_pks = [item.request.id for item in plan.items]
        # re-read so validation runs against the current stored state
        current = self.gateway.get_many(request_pks)
        status = shared_status(current)
        if status != plan.status:
            raise StateMismatch(plan.status, status)

        results = []
        for request, item in zip(current, plan.items):
            try:
                result = self.state_machine.apply(request, plan.transition, item.data, actor, comment_prefix=BULK_COMMENT_PREFIX)
            except WorkflowError as exc:
                logger.warning(
                    "Bulk transition rejected: %s",
                    exc.message,
                    extra={"request_pk": request.id, "transition": plan.transition, "error_code": exc.code},
                )
                raise exc.for_request(request)
            results.append((request, result))

        updates = [result.to_update(request) for request, result in results]
        if self.gateway.supports_atomic_batch:
            self.gateway.batch_update(updates)
        else:
            self._commit_sequentially(updates)

        logger.info(
            "Bulk transition committed",
            extra={"transition": plan.transition, "from_status": plan.status, "count": len(updates)},
        )
        return BulkResult(
            transition=plan.transition,
            processed=request_pks,
            target_statuses={request.id: result.target_status for request, result in results},
        )

    def _commit_sequentially(self, updates):
        succeeded, failed = [], []
        for update in updates:
            try:
                self.gateway.batch_update([update])
            except (PersistenceError, WorkflowError):
                logger.exception("Bulk write failed", extra={"request_pk": update.request_pk})
                failed.append(update.request_pk)
            else:
                succeeded.append(update.request_pk)
        if failed:
            raise PartialCommitError(succeeded=succeeded, failed=failed)
