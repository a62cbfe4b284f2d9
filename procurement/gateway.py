from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from decimal import Decimal

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import Max
from django.utils.dateparse import parse_date, parse_datetime

from common.utils import _to_json_compatible
from procurement import history
from procurement import models as orm
from procurement.domain import (
    AlternativeSourcing,
    BranchDispatchInfo,
    BranchRequirement,
    Classification,
    DispatchProgress,
    EcountRegistration,
    LogisticsIssue,
    MultiPartRequest,
    ProcessTermination,
    PurchaseOrderInfo,
    PurchaseRequest,
    ReceiptConfirmation,
    StatusHistoryEntry,
    WarehouseReceipt,
)
from procurement.exceptions import RequestNotFound, StateMismatch

logger = logging.getLogger(__name__)

REQUESTS = "purchase_requests"
SETS = "multi_part_requests"


class PersistenceError(Exception):
    pass


@dataclass(frozen=True)
class RequestUpdate:
    request_pk: str
    expected_status: str
    fields: dict
    append_history: StatusHistoryEntry | None = None
    expected_version: int | None = None


@dataclass(frozen=True)
class InsertRecord:
    collection: str
    record: PurchaseRequest | MultiPartRequest


class PersistenceGateway:
    """Durable store for purchase requests and sets.

    ``batch_update`` and ``batch_insert`` are all-or-nothing when
    ``supports_atomic_batch`` is true. Every update carries the status it
    expects to find; a different stored status raises ``StateMismatch``.
    """

    supports_atomic_batch = True

    def get(self, request_pk) -> PurchaseRequest:
        raise NotImplementedError

    def get_many(self, request_pks) -> list[PurchaseRequest]:
        return [self.get(request_pk) for request_pk in request_pks]

    def batch_update(self, updates) -> None:
        raise NotImplementedError

    def batch_insert(self, records) -> None:
        raise NotImplementedError

    def find_by_set(self, set_id) -> list[PurchaseRequest]:
        raise NotImplementedError

    def get_set(self, set_id) -> MultiPartRequest:
        raise NotImplementedError

    def update_set(self, set_id, fields) -> MultiPartRequest:
        raise NotImplementedError


def _check_expectations(current: PurchaseRequest, update: RequestUpdate):
    if current.current_status != update.expected_status:
        raise StateMismatch(update.expected_status, current.current_status, request_pk=current.id)
    if update.expected_version is not None and current.version != update.expected_version:
        raise StateMismatch(
            update.expected_status,
            current.current_status,
            request_pk=current.id,
            reason="stale_version",
            expected_version=update.expected_version,
            actual_version=current.version,
        )


class InMemoryPersistenceGateway(PersistenceGateway):
    """Dictionary-backed gateway.

    ``atomic=False`` makes batches land one write at a time, and ``fail_on``
    names record keys whose write raises ``PersistenceError``; both exist to
    exercise hosts whose storage cannot commit several records at once.
    """

    def __init__(self, atomic=True, fail_on=None):
        self.supports_atomic_batch = atomic
        self.fail_on = set(fail_on or ())
        self.requests: dict[str, PurchaseRequest] = {}
        self.sets: dict[str, MultiPartRequest] = {}

    def get(self, request_pk):
        try:
            return self.requests[str(request_pk)]
        except KeyError:
            raise RequestNotFound(str(request_pk)) from None

    def batch_update(self, updates):
        staged = {}
        for update in updates:
            request_pk = str(update.request_pk)
            current = staged.get(request_pk) or self.get(request_pk)
            _check_expectations(current, update)
            if request_pk in self.fail_on:
                raise PersistenceError(f"Write failed for {request_pk}")
            changed = replace(current, **update.fields, version=current.version + 1)
            if update.append_history is not None:
                changed = replace(changed, status_history=history.append(changed.status_history, update.append_history))
            staged[request_pk] = changed
            if not self.supports_atomic_batch:
                self.requests[request_pk] = changed
        self.requests.update(staged)

    def batch_insert(self, records):
        staged_requests = {}
        staged_sets = {}
        for item in records:
            record = item.record
            key = record.set_id if item.collection == SETS else record.id
            if key in self.requests or key in self.sets or key in staged_requests or key in staged_sets:
                raise PersistenceError(f"Duplicate key {key}")
            if key in self.fail_on:
                raise PersistenceError(f"Write failed for {key}")
            target = staged_sets if item.collection == SETS else staged_requests
            target[key] = record
            if not self.supports_atomic_batch:
                (self.sets if item.collection == SETS else self.requests)[key] = record
        self.requests.update(staged_requests)
        self.sets.update(staged_sets)

    def find_by_set(self, set_id):
        members = [request for request in self.requests.values() if request.set_id == set_id]
        return sorted(members, key=lambda request: request.part_order_in_set or 0)

    def get_set(self, set_id):
        try:
            return self.sets[set_id]
        except KeyError:
            raise RequestNotFound(set_id, kind="set") from None

    def update_set(self, set_id, fields):
        updated = replace(self.get_set(set_id), **fields)
        self.sets[set_id] = updated
        return updated


def _parse_datetime(value):
    if isinstance(value, str):
        return parse_datetime(value)
    return value


def _parse_date(value):
    if isinstance(value, str):
        return parse_date(value)
    return value


def requirement_to_json(requirement):
    return {
        "branch_id": requirement.branch_id,
        "branch_name": requirement.branch_name,
        "requested_quantity": requirement.requested_quantity,
    }


def _requirements_from_json(items):
    return tuple(
        BranchRequirement(
            branch_id=str(item["branch_id"]),
            branch_name=item.get("branch_name") or "",
            requested_quantity=int(item.get("requested_quantity") or 0),
        )
        for item in items or ()
    )


def _ledger_from_json(rows):
    return tuple(
        BranchDispatchInfo(
            branch_id=str(row["branch_id"]),
            branch_name=row.get("branch_name") or "",
            required_quantity=int(row.get("required_quantity") or 0),
            dispatched_quantity=int(row.get("dispatched_quantity") or 0),
            is_dispatched=bool(row.get("is_dispatched")),
            actual_dispatched_quantity=row.get("actual_dispatched_quantity"),
            dispatched_at=_parse_datetime(row.get("dispatched_at")),
            dispatched_by_uid=row.get("dispatched_by_uid"),
            confirmed_quantity=row.get("confirmed_quantity"),
            branch_receipt_memo=row.get("branch_receipt_memo") or "",
        )
        for row in rows or ()
    )


def _issue_from_json(data):
    if not data:
        return None
    return LogisticsIssue(**{**data, "reported_at": _parse_datetime(data["reported_at"])})


def _sourcing_from_json(data):
    if not data:
        return None
    cost = data.get("estimated_cost")
    return AlternativeSourcing(
        **{
            **data,
            "initiated_at": _parse_datetime(data["initiated_at"]),
            "estimated_cost": Decimal(cost) if cost is not None else None,
            "estimated_delivery": _parse_date(data.get("estimated_delivery")),
        }
    )


def _termination_from_json(data):
    if not data:
        return None
    return ProcessTermination(**{**data, "terminated_at": _parse_datetime(data["terminated_at"])})


def request_from_model(instance) -> PurchaseRequest:
    classification = None
    if instance.item_group1 and instance.item_group2 and instance.item_group3:
        classification = Classification(instance.item_group1, instance.item_group2, instance.item_group3)

    registration = None
    if instance.ecount_registered_at:
        registration = EcountRegistration(instance.ecount_registered_at, instance.ecount_registrar_uid or "")

    purchase_order = None
    if instance.po_completed_at:
        purchase_order = PurchaseOrderInfo(
            completed_at=instance.po_completed_at,
            completer_uid=instance.po_completer_uid or "",
            expected_delivery_date=instance.expected_delivery_date,
            expected_delivery_quantity=instance.expected_delivery_quantity,
            actual_supplier=instance.actual_supplier or "",
            memo=instance.po_memo,
        )

    receipt = None
    if instance.warehouse_receipt_at:
        receipt = WarehouseReceipt(
            received_at=instance.warehouse_receipt_at,
            receiver_uid=instance.warehouse_receiver_uid or "",
            actual_received_quantity=instance.actual_received_quantity,
        )

    dispatch = None
    if instance.branch_dispatch_quantities is not None:
        dispatch = DispatchProgress(
            ledger=_ledger_from_json(instance.branch_dispatch_quantities),
            remaining_quantity=instance.remaining_quantity,
            last_dispatched_at=instance.last_dispatched_at,
            last_dispatcher_uid=instance.last_dispatcher_uid or "",
            completed_at=instance.branch_dispatch_completed_at,
            completer_uid=instance.branch_dispatch_completer_uid,
            memo=instance.dispatch_memo,
            tracking_information=instance.tracking_information,
        )

    confirmation = None
    if instance.branch_receipt_confirmed_at:
        confirmation = ReceiptConfirmation(instance.branch_receipt_confirmed_at, instance.branch_receipt_confirmer_uid or "")

    entries = tuple(
        StatusHistoryEntry(
            status=entry.status,
            updated_at=entry.updated_at,
            updated_by_uid=entry.updated_by_uid,
            updated_by_name=entry.updated_by_name,
            comments=entry.comments,
        )
        for entry in instance.history.all()
    )

    return PurchaseRequest(
        id=str(instance.pk),
        request_id=instance.request_id,
        internal_part_id=instance.internal_part_id,
        part_number=instance.part_number,
        part_name=instance.part_name,
        price=instance.price,
        currency=instance.currency,
        classification=classification,
        initial_supplier=instance.initial_supplier,
        notes=instance.notes,
        importance=instance.importance,
        requestor_uid=instance.requestor_uid,
        requestor_name=instance.requestor_name,
        request_date=instance.request_date,
        branch_requirements=_requirements_from_json(instance.branch_requirements),
        logistics_stock_quantity=instance.logistics_stock_quantity,
        total_requested_quantity=instance.total_requested_quantity,
        set_id=instance.set_id,
        set_name=instance.set_name,
        is_part_of_set=instance.is_part_of_set,
        part_order_in_set=instance.part_order_in_set,
        current_status=instance.current_status,
        current_responsible_team=instance.current_responsible_team,
        status_history=entries,
        status_comments=dict(instance.status_comments or {}),
        registration=registration,
        purchase_order=purchase_order,
        warehouse_receipt=receipt,
        dispatch=dispatch,
        receipt_confirmation=confirmation,
        logistics_issue=_issue_from_json(instance.logistics_issue),
        alternative_sourcing=_sourcing_from_json(instance.alternative_sourcing),
        process_termination=_termination_from_json(instance.process_termination),
        version=instance.version,
        created_at=instance.created_at,
        updated_at=instance.updated_at,
    )


def set_from_model(instance) -> MultiPartRequest:
    return MultiPartRequest(
        id=str(instance.pk),
        set_id=instance.set_id,
        set_name=instance.set_name,
        set_description=instance.set_description,
        requestor_uid=instance.requestor_uid,
        requestor_name=instance.requestor_name,
        request_date=instance.request_date,
        importance=instance.importance,
        overall_status=instance.overall_status,
        completed_parts_count=instance.completed_parts_count,
        total_parts_count=instance.total_parts_count,
        part_request_ids=tuple(instance.part_request_ids or ()),
        allow_partial_dispatch=instance.allow_partial_dispatch,
        notes=instance.notes,
        created_at=instance.created_at,
        updated_at=instance.updated_at,
    )


SCALAR_REQUEST_FIELDS = {
    "request_id",
    "internal_part_id",
    "part_number",
    "part_name",
    "price",
    "currency",
    "initial_supplier",
    "notes",
    "importance",
    "requestor_uid",
    "requestor_name",
    "request_date",
    "logistics_stock_quantity",
    "total_requested_quantity",
    "set_id",
    "set_name",
    "is_part_of_set",
    "part_order_in_set",
    "current_status",
    "current_responsible_team",
    "status_comments",
    "created_at",
    "updated_at",
}


def _stage_columns(name, value):
    if name == "branch_requirements":
        return {"branch_requirements": [requirement_to_json(item) for item in value]}
    if name == "classification":
        return {
            "item_group1": value.group1 if value else None,
            "item_group2": value.group2 if value else None,
            "item_group3": value.group3 if value else None,
        }
    if name == "registration":
        return {
            "ecount_registered_at": value.registered_at if value else None,
            "ecount_registrar_uid": value.registrar_uid if value else None,
        }
    if name == "purchase_order":
        return {
            "po_completed_at": value.completed_at if value else None,
            "po_completer_uid": value.completer_uid if value else None,
            "expected_delivery_date": value.expected_delivery_date if value else None,
            "expected_delivery_quantity": value.expected_delivery_quantity if value else None,
            "actual_supplier": value.actual_supplier if value else None,
            "po_memo": value.memo if value else "",
        }
    if name == "warehouse_receipt":
        return {
            "warehouse_receipt_at": value.received_at if value else None,
            "warehouse_receiver_uid": value.receiver_uid if value else None,
            "actual_received_quantity": value.actual_received_quantity if value else None,
        }
    if name == "dispatch":
        return {
            "branch_dispatch_quantities": _to_json_compatible([asdict(row) for row in value.ledger]) if value else None,
            "remaining_quantity": value.remaining_quantity if value else None,
            "last_dispatched_at": value.last_dispatched_at if value else None,
            "last_dispatcher_uid": value.last_dispatcher_uid if value else None,
            "branch_dispatch_completed_at": value.completed_at if value else None,
            "branch_dispatch_completer_uid": value.completer_uid if value else None,
            "dispatch_memo": value.memo if value else "",
            "tracking_information": value.tracking_information if value else "",
        }
    if name == "receipt_confirmation":
        return {
            "branch_receipt_confirmed_at": value.confirmed_at if value else None,
            "branch_receipt_confirmer_uid": value.confirmer_uid if value else None,
        }
    if name in ("logistics_issue", "alternative_sourcing", "process_termination"):
        return {name: _to_json_compatible(asdict(value)) if value else None}
    raise ValueError(f"Unknown purchase request field: {name}")


def _apply_fields(instance, fields):
    for name, value in fields.items():
        if name in SCALAR_REQUEST_FIELDS:
            setattr(instance, name, value)
            continue
        for column, column_value in _stage_columns(name, value).items():
            setattr(instance, column, column_value)


def _history_row(instance, sequence, entry):
    return orm.StatusHistoryEntry(
        request=instance,
        sequence=sequence,
        status=entry.status,
        updated_at=entry.updated_at,
        updated_by_uid=entry.updated_by_uid,
        updated_by_name=entry.updated_by_name,
        comments=entry.comments,
    )


class DjangoPersistenceGateway(PersistenceGateway):
    supports_atomic_batch = True

    def _queryset(self):
        return orm.PurchaseRequest.objects.prefetch_related("history")

    def get(self, request_pk):
        try:
            instance = self._queryset().filter(pk=request_pk).first()
        except (DjangoValidationError, ValueError):
            instance = None
        if instance is None:
            raise RequestNotFound(str(request_pk))
        return request_from_model(instance)

    def get_many(self, request_pks):
        request_pks = [str(request_pk) for request_pk in request_pks]
        try:
            found = {str(instance.pk): instance for instance in self._queryset().filter(pk__in=request_pks)}
        except (DjangoValidationError, ValueError):
            found = {}
        missing = [request_pk for request_pk in request_pks if request_pk not in found]
        if missing:
            raise RequestNotFound(missing[0])
        return [request_from_model(found[request_pk]) for request_pk in request_pks]

    def batch_update(self, updates):
        updates = list(updates)
        with transaction.atomic():
            locked = {
                str(instance.pk): instance
                for instance in orm.PurchaseRequest.objects.select_for_update().filter(
                    pk__in=[str(update.request_pk) for update in updates]
                )
            }
            for update in updates:
                instance = locked.get(str(update.request_pk))
                if instance is None:
                    raise RequestNotFound(str(update.request_pk))
                if instance.current_status != update.expected_status or (
                    update.expected_version is not None and instance.version != update.expected_version
                ):
                    _check_expectations(request_from_model(instance), update)

                _apply_fields(instance, update.fields)
                instance.version += 1
                instance.save()

                if update.append_history is not None:
                    # sequence is allocated while the request row is locked
                    last = instance.history.aggregate(last=Max("sequence"))["last"] or 0
                    _history_row(instance, last + 1, update.append_history).save()

        logger.debug("Committed request batch", extra={"count": len(updates)})

    def batch_insert(self, records):
        with transaction.atomic():
            for item in records:
                record = item.record
                if item.collection == SETS:
                    orm.MultiPartRequest.objects.create(
                        id=record.id,
                        set_id=record.set_id,
                        set_name=record.set_name,
                        set_description=record.set_description,
                        requestor_uid=record.requestor_uid,
                        requestor_name=record.requestor_name,
                        request_date=record.request_date,
                        importance=record.importance,
                        overall_status=record.overall_status,
                        completed_parts_count=record.completed_parts_count,
                        total_parts_count=record.total_parts_count,
                        part_request_ids=list(record.part_request_ids),
                        allow_partial_dispatch=record.allow_partial_dispatch,
                        notes=record.notes,
                        created_at=record.created_at,
                        updated_at=record.updated_at,
                    )
                    continue

                instance = orm.PurchaseRequest(id=record.id, version=record.version)
                _apply_fields(
                    instance,
                    {
                        name: getattr(record, name)
                        for name in (
                            *SCALAR_REQUEST_FIELDS,
                            "branch_requirements",
                            "classification",
                            "registration",
                            "purchase_order",
                            "warehouse_receipt",
                            "dispatch",
                            "receipt_confirmation",
                            "logistics_issue",
                            "alternative_sourcing",
                            "process_termination",
                        )
                    },
                )
                instance.save(force_insert=True)
                orm.StatusHistoryEntry.objects.bulk_create(
                    [_history_row(instance, index, entry) for index, entry in enumerate(record.status_history, start=1)]
                )

    def find_by_set(self, set_id):
        queryset = self._queryset().filter(set_id=set_id).order_by("part_order_in_set", "created_at")
        return [request_from_model(instance) for instance in queryset]

    def get_set(self, set_id):
        instance = orm.MultiPartRequest.objects.filter(set_id=set_id).first()
        if instance is None:
            raise RequestNotFound(set_id, kind="set")
        return set_from_model(instance)

    def update_set(self, set_id, fields):
        with transaction.atomic():
            instance = orm.MultiPartRequest.objects.select_for_update().filter(set_id=set_id).first()
            if instance is None:
                raise RequestNotFound(set_id, kind="set")
            for name, value in fields.items():
                setattr(instance, name, list(value) if name == "part_request_ids" else value)
            instance.save()
        return set_from_model(instance)
