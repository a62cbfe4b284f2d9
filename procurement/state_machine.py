import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace

from procurement import history, ledger
from procurement.domain import (
    NON_TERMINAL_STATUSES,
    AlternativeSourcing,
    BranchDispatchInfo,
    Classification,
    DispatchProgress,
    EcountRegistration,
    IssueType,
    LogisticsIssue,
    ProcessTermination,
    PurchaseOrderInfo,
    ReceiptConfirmation,
    RequestStatus,
    ResponsibleTeam,
    SourcingMethod,
    StatusHistoryEntry,
    TerminationReason,
    Transition,
    UrgencyLevel,
    WarehouseReceipt,
)
from procurement.exceptions import StateMismatch, TerminalStateError, ValidationError, WorkflowError
from procurement.gateway import RequestUpdate
from procurement.identifiers import SystemClock
from procurement.validation import (
    boolean,
    choice,
    decimal_value,
    integer,
    is_blank,
    optional_integer,
    text,
    to_date,
    to_datetime,
    validate_required,
)

logger = logging.getLogger(__name__)

TRANSITION_SOURCES = {
    Transition.REGISTER_ECOUNT: frozenset({RequestStatus.OPERATIONS_SUBMITTED}),
    Transition.UPDATE_CLASSIFICATION: frozenset({RequestStatus.OPERATIONS_SUBMITTED, RequestStatus.ECOUNT_REGISTERED}),
    Transition.COMPLETE_PURCHASE_ORDER: frozenset({RequestStatus.OPERATIONS_SUBMITTED, RequestStatus.ECOUNT_REGISTERED}),
    Transition.RECEIVE_AT_WAREHOUSE: frozenset({RequestStatus.PO_COMPLETED}),
    Transition.DISPATCH_TO_BRANCHES: frozenset({RequestStatus.WAREHOUSE_RECEIVED, RequestStatus.PARTIAL_DISPATCHED}),
    Transition.CONFIRM_BRANCH_RECEIPT: frozenset({RequestStatus.BRANCH_DISPATCHED}),
    Transition.REPORT_LOGISTICS_ISSUE: NON_TERMINAL_STATUSES,
    Transition.START_ALTERNATIVE_SOURCING: frozenset({RequestStatus.LOGISTICS_ISSUE_REPORTED}),
    Transition.TERMINATE_PROCESS: NON_TERMINAL_STATUSES,
}

CLASSIFICATION_FIELDS = ("item_group1", "item_group2", "item_group3")


@dataclass(frozen=True)
class TransitionResult:
    transition: str
    from_status: str
    target_status: str
    updated_fields: dict
    history_entry: StatusHistoryEntry

    def to_update(self, request) -> RequestUpdate:
        return RequestUpdate(
            request_pk=request.id,
            expected_status=request.current_status,
            fields=self.updated_fields,
            append_history=self.history_entry,
            expected_version=request.version,
        )


def _classification(data, required):
    if not required and all(is_blank(data.get(field)) for field in CLASSIFICATION_FIELDS):
        return None
    validate_required(data, CLASSIFICATION_FIELDS)
    return Classification(*(str(data[field]).strip() for field in CLASSIFICATION_FIELDS))


def resolve_supplier(request, explicit_supplier):
    """Explicit input wins, then the stored actual supplier, then the initial supplier."""
    if not is_blank(explicit_supplier):
        return str(explicit_supplier).strip()
    if request.purchase_order and not is_blank(request.purchase_order.actual_supplier):
        return request.purchase_order.actual_supplier
    if not is_blank(request.initial_supplier):
        return request.initial_supplier.strip()
    raise ValidationError("actual_supplier", "Actual supplier is required.")


def _register_ecount(request, data, actor, now):
    fields = {
        "current_status": RequestStatus.ECOUNT_REGISTERED,
        "current_responsible_team": ResponsibleTeam.LOGISTICS,
        "classification": _classification(data, required=True),
        "registration": EcountRegistration(registered_at=now, registrar_uid=actor.uid),
    }
    return fields, "E-COUNT registration completed"


def _update_classification(request, data, actor, now):
    classification = _classification(data, required=True)
    summary = f"Item groups updated: {classification.group1} > {classification.group2} > {classification.group3}"
    return {"classification": classification}, summary


def _complete_purchase_order(request, data, actor, now):
    validate_required(data, ["expected_delivery_date", "expected_delivery_quantity"])
    expected_date = to_date(data["expected_delivery_date"], "expected_delivery_date")
    quantity = integer(data["expected_delivery_quantity"], "expected_delivery_quantity", minimum=1)
    supplier = resolve_supplier(request, data.get("actual_supplier"))

    fields = {
        "current_status": RequestStatus.PO_COMPLETED,
        "current_responsible_team": ResponsibleTeam.LOGISTICS,
        "purchase_order": PurchaseOrderInfo(
            completed_at=now,
            completer_uid=actor.uid,
            expected_delivery_date=expected_date,
            expected_delivery_quantity=quantity,
            actual_supplier=supplier,
            memo=text(data, "po_memo"),
        ),
    }
    if request.registration is None:
        fields["registration"] = EcountRegistration(registered_at=now, registrar_uid=actor.uid)
    classification = _classification(data, required=False)
    if classification is not None:
        fields["classification"] = classification

    if request.current_status == RequestStatus.OPERATIONS_SUBMITTED:
        return fields, "E-COUNT registration and purchase order completed"
    return fields, "Purchase order completed"


def _receive_at_warehouse(request, data, actor, now):
    validate_required(data, ["actual_receipt_date", "actual_received_quantity"])
    received_at = to_datetime(data["actual_receipt_date"], "actual_receipt_date")
    quantity = integer(data["actual_received_quantity"], "actual_received_quantity", minimum=1)
    fields = {
        "current_status": RequestStatus.WAREHOUSE_RECEIVED,
        "current_responsible_team": ResponsibleTeam.LOGISTICS,
        "warehouse_receipt": WarehouseReceipt(received_at=received_at, receiver_uid=actor.uid, actual_received_quantity=quantity),
    }
    return fields, f"Warehouse receipt completed ({quantity})"


def _row_input(raw):
    if isinstance(raw, BranchDispatchInfo):
        return {
            "branch_id": raw.branch_id,
            "dispatched_quantity": raw.dispatched_quantity,
            "is_dispatched": raw.is_dispatched,
            "actual_dispatched_quantity": raw.actual_dispatched_quantity,
        }
    if isinstance(raw, Mapping):
        return raw
    raise ValidationError("branch_dispatch_quantities", "Each dispatch row must be an object.")


def _dispatch_rows(request, raw_rows):
    if raw_rows is None or isinstance(raw_rows, (str, Mapping)):
        raise ValidationError("branch_dispatch_quantities", "branch_dispatch_quantities must be a list of branch rows.")

    base = ledger.initialize(request.branch_requirements, request.ledger)
    known = {row.branch_id for row in base}
    inputs = {}
    for raw in raw_rows:
        values = _row_input(raw)
        branch_id = str(values.get("branch_id") or "")
        field = f"branch_dispatch_quantities.{branch_id}"
        if branch_id not in known:
            raise ValidationError(field, f"Branch {branch_id} is not part of this request.", branch_id=branch_id)
        if branch_id in inputs:
            raise ValidationError(field, f"Branch {branch_id} appears more than once.", branch_id=branch_id)
        if is_blank(values.get("dispatched_quantity")):
            raise ValidationError(f"{field}.dispatched_quantity", "Dispatch quantity is required.", branch_id=branch_id)
        actual = values.get("actual_dispatched_quantity")
        inputs[branch_id] = {
            "dispatched_quantity": integer(values["dispatched_quantity"], f"{field}.dispatched_quantity", minimum=0),
            "is_dispatched": boolean(values.get("is_dispatched", False), f"{field}.is_dispatched"),
            "actual_dispatched_quantity": None if is_blank(actual) else integer(actual, f"{field}.actual_dispatched_quantity", minimum=0),
        }

    rows = []
    for row in base:
        changes = inputs.get(row.branch_id)
        if changes:
            if changes["actual_dispatched_quantity"] is None:
                changes = {**changes, "actual_dispatched_quantity": row.actual_dispatched_quantity}
            row = replace(row, **changes)
        rows.append(row)
    return tuple(rows)


def _dispatch_to_branches(request, data, actor, now):
    rows = _dispatch_rows(request, data.get("branch_dispatch_quantities"))

    committed = {row.branch_id: row for row in request.ledger if row.is_dispatched}
    for row in rows:
        previous = committed.get(row.branch_id)
        if previous and (not row.is_dispatched or row.dispatched_quantity != previous.dispatched_quantity):
            raise ValidationError(
                f"branch_dispatch_quantities.{row.branch_id}",
                f"{row.branch_name} has already been dispatched and cannot be changed.",
                branch_id=row.branch_id,
            )
    if not any(row.is_dispatched for row in rows):
        raise ValidationError("branch_dispatch_quantities", "Select at least one branch to dispatch.")

    remaining = ledger.ensure_within_capacity(rows, request.actual_received_quantity)

    rows = tuple(
        replace(row, dispatched_at=now, dispatched_by_uid=actor.uid)
        if row.is_dispatched and row.branch_id not in committed
        else row
        for row in rows
    )
    done = ledger.all_dispatched(rows)
    previous_progress = request.dispatch
    progress = DispatchProgress(
        ledger=rows,
        remaining_quantity=remaining,
        last_dispatched_at=now,
        last_dispatcher_uid=actor.uid,
        completed_at=now if done else None,
        completer_uid=actor.uid if done else None,
        memo=text(data, "dispatch_memo", previous_progress.memo if previous_progress else ""),
        tracking_information=text(
            data, "tracking_information", previous_progress.tracking_information if previous_progress else ""
        ),
    )
    fields = {
        "current_status": RequestStatus.BRANCH_DISPATCHED if done else RequestStatus.PARTIAL_DISPATCHED,
        "current_responsible_team": ResponsibleTeam.OPERATIONS if done else ResponsibleTeam.LOGISTICS,
        "dispatch": progress,
    }
    label = "Branch dispatch completed" if done else "Partial branch dispatch"
    return fields, f"{label} ({ledger.dispatch_summary(rows)})"


def _confirmation_inputs(raw):
    if isinstance(raw, Mapping):
        items = [
            {"branch_id": branch_id, **value} if isinstance(value, Mapping) else {"branch_id": branch_id, "confirmed_quantity": value}
            for branch_id, value in raw.items()
        ]
    elif isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        raise ValidationError("confirmations", "confirmations is required.")

    confirmations = {}
    for item in items:
        if not isinstance(item, Mapping):
            raise ValidationError("confirmations", "Each confirmation must be an object.")
        branch_id = str(item.get("branch_id") or "")
        field = f"confirmations.{branch_id}"
        if is_blank(item.get("confirmed_quantity")):
            raise ValidationError(field, "Confirmed quantity is required.", branch_id=branch_id)
        quantity = integer(item["confirmed_quantity"], f"{field}.confirmed_quantity", minimum=0)
        confirmations[branch_id] = (quantity, text(item, "branch_receipt_memo"))
    return confirmations


def _confirm_branch_receipt(request, data, actor, now):
    confirmations = _confirmation_inputs(data.get("confirmations"))
    known = {row.branch_id for row in request.ledger}
    unknown = sorted(set(confirmations) - known)
    if unknown:
        raise ValidationError(f"confirmations.{unknown[0]}", f"Branch {unknown[0]} is not part of this request.", branch_id=unknown[0])
    rows = ledger.apply_confirmations(request.ledger, confirmations)
    fields = {
        "current_status": RequestStatus.BRANCH_RECEIVED_CONFIRMED,
        "current_responsible_team": ResponsibleTeam.COMPLETED,
        "dispatch": replace(request.dispatch, ledger=rows),
        "receipt_confirmation": ReceiptConfirmation(confirmed_at=now, confirmer_uid=actor.uid),
    }
    summary = ", ".join(f"{row.branch_name}: {row.confirmed_quantity}" for row in rows)
    return fields, f"Branch receipt confirmed ({summary})"


def _report_logistics_issue(request, data, actor, now):
    validate_required(data, ["issue_type", "description", "urgency_level", "alternative_required"])
    issue = LogisticsIssue(
        reported_at=now,
        reporter_uid=actor.uid,
        reporter_name=actor.name,
        issue_type=choice(data["issue_type"], "issue_type", IssueType),
        description=text(data, "description"),
        urgency_level=choice(data["urgency_level"], "urgency_level", UrgencyLevel),
        alternative_required=boolean(data["alternative_required"], "alternative_required"),
        estimated_delay=optional_integer(data, "estimated_delay", minimum=-1),
    )
    fields = {"current_status": RequestStatus.LOGISTICS_ISSUE_REPORTED, "logistics_issue": issue}
    return fields, f"Logistics issue reported: {IssueType(issue.issue_type).label}"


def _start_alternative_sourcing(request, data, actor, now):
    validate_required(data, ["method", "description"])
    cost = data.get("estimated_cost")
    delivery = data.get("estimated_delivery")
    sourcing = AlternativeSourcing(
        initiated_at=now,
        initiator_uid=actor.uid,
        initiator_name=actor.name,
        method=choice(data["method"], "method", SourcingMethod),
        description=text(data, "description"),
        estimated_cost=None if is_blank(cost) else decimal_value(cost, "estimated_cost", minimum=0),
        estimated_delivery=None if is_blank(delivery) else to_date(delivery, "estimated_delivery"),
    )
    fields = {"current_status": RequestStatus.ALTERNATIVE_SOURCING, "alternative_sourcing": sourcing}
    return fields, f"Alternative sourcing started: {SourcingMethod(sourcing.method).label}"


def _terminate_process(request, data, actor, now):
    validate_required(data, ["reason", "final_notes"])
    termination = ProcessTermination(
        terminated_at=now,
        terminator_uid=actor.uid,
        terminator_name=actor.name,
        reason=choice(data["reason"], "reason", TerminationReason),
        final_notes=text(data, "final_notes"),
    )
    fields = {
        "current_status": RequestStatus.PROCESS_TERMINATED,
        "current_responsible_team": ResponsibleTeam.COMPLETED,
        "process_termination": termination,
    }
    return fields, f"Process terminated: {TerminationReason(termination.reason).label}"


TRANSITION_HANDLERS = {
    Transition.REGISTER_ECOUNT: _register_ecount,
    Transition.UPDATE_CLASSIFICATION: _update_classification,
    Transition.COMPLETE_PURCHASE_ORDER: _complete_purchase_order,
    Transition.RECEIVE_AT_WAREHOUSE: _receive_at_warehouse,
    Transition.DISPATCH_TO_BRANCHES: _dispatch_to_branches,
    Transition.CONFIRM_BRANCH_RECEIPT: _confirm_branch_receipt,
    Transition.REPORT_LOGISTICS_ISSUE: _report_logistics_issue,
    Transition.START_ALTERNATIVE_SOURCING: _start_alternative_sourcing,
    Transition.TERMINATE_PROCESS: _terminate_process,
}


def coerce_transition(value):
    try:
        return Transition(value)
    except ValueError:
        raise ValidationError("transition", f"Unknown transition: {value}.", allowed=list(Transition.values)) from None


class RequestStateMachine:
    """Single-request transition function.

    ``apply`` is pure: it checks, in order, terminal status, source status and
    input, and returns the field diff plus one new history entry without
    touching storage. ``execute`` wraps it in a read-apply-commit cycle.
    """

    def __init__(self, gateway=None, clock=None):
        self.gateway = gateway
        self.clock = clock or SystemClock()

    def apply(self, request, transition, data, actor, comment_prefix=None) -> TransitionResult:
        transition = coerce_transition(transition)
        if request.is_terminal:
            raise TerminalStateError(request.current_status, request_pk=request.id)
        sources = TRANSITION_SOURCES[transition]
        if request.current_status not in sources:
            raise StateMismatch(sources, request.current_status, request_pk=request.id)

        data = dict(data or {})
        now = self.clock.now()
        fields, summary = TRANSITION_HANDLERS[transition](request, data, actor, now)
        target_status = str(fields.get("current_status", request.current_status))

        comments = text(data, "comments")
        if comments:
            fields["status_comments"] = {**request.status_comments, target_status: comments}
        else:
            comments = f"{comment_prefix}: {summary}" if comment_prefix else summary
        fields["updated_at"] = now

        return TransitionResult(
            transition=transition.value,
            from_status=request.current_status,
            target_status=target_status,
            updated_fields=fields,
            history_entry=history.build_entry(target_status, actor, now, comments),
        )

    def execute(self, request_pk, transition, data, actor):
        request = self.gateway.get(request_pk)
        log_extra = {"request_pk": request.id, "transition": str(transition), "from_status": request.current_status}
        try:
            result = self.apply(request, transition, data, actor)
            self.gateway.batch_update([result.to_update(request)])
        except WorkflowError as exc:
            logger.warning("Transition rejected: %s", exc.message, extra={**log_extra, "error_code": exc.code})
            raise
        logger.info("Transition committed", extra={**log_extra, "to_status": result.target_status})
        return self.gateway.get(request_pk)
