from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from django.db import models


class RequestStatus(models.TextChoices):
    OPERATIONS_SUBMITTED = "operations_submitted", "Operations submitted"
    ECOUNT_REGISTERED = "ecount_registered", "E-COUNT registered"
    PO_COMPLETED = "po_completed", "Purchase order completed"
    WAREHOUSE_RECEIVED = "warehouse_received", "Warehouse received"
    PARTIAL_DISPATCHED = "partial_dispatched", "Partially dispatched"
    BRANCH_DISPATCHED = "branch_dispatched", "Dispatched to branches"
    BRANCH_RECEIVED_CONFIRMED = "branch_received_confirmed", "Branch receipt confirmed"
    LOGISTICS_ISSUE_REPORTED = "logistics_issue_reported", "Logistics issue reported"
    ALTERNATIVE_SOURCING = "alternative_sourcing", "Alternative sourcing"
    PROCESS_TERMINATED = "process_terminated", "Process terminated"


TERMINAL_STATUSES = frozenset({RequestStatus.BRANCH_RECEIVED_CONFIRMED, RequestStatus.PROCESS_TERMINATED})
NON_TERMINAL_STATUSES = frozenset(set(RequestStatus) - TERMINAL_STATUSES)


class ResponsibleTeam(models.TextChoices):
    OPERATIONS = "operations", "Operations"
    LOGISTICS = "logistics", "Logistics"
    COMPLETED = "completed", "Completed"


class Importance(models.TextChoices):
    LOW = "low", "Low"
    MEDIUM = "medium", "Medium"
    HIGH = "high", "High"
    URGENT = "urgent", "Urgent"


class SetStatus(models.TextChoices):
    IN_PROGRESS = "in_progress", "In progress"
    PARTIAL_COMPLETE = "partial_complete", "Partially complete"
    COMPLETE = "complete", "Complete"


class IssueType(models.TextChoices):
    SUPPLY_DELAY = "supply_delay", "Supply delay"
    SUPPLY_SHORTAGE = "supply_shortage", "Supply shortage"
    SUPPLIER_ISSUE = "supplier_issue", "Supplier issue"
    QUALITY_ISSUE = "quality_issue", "Quality issue"
    OTHER = "other", "Other"


class UrgencyLevel(models.TextChoices):
    MEDIUM = "medium", "Medium"
    HIGH = "high", "High"
    CRITICAL = "critical", "Critical"


class SourcingMethod(models.TextChoices):
    DIRECT_PURCHASE = "direct_purchase", "Direct purchase"
    BRANCH_TRANSFER = "branch_transfer", "Branch transfer"
    EXTERNAL_SUPPLIER = "external_supplier", "External supplier"
    TEMPORARY_SOLUTION = "temporary_solution", "Temporary solution"


class TerminationReason(models.TextChoices):
    ALTERNATIVE_COMPLETED = "alternative_completed", "Alternative completed"
    REQUEST_CANCELLED = "request_cancelled", "Request cancelled"
    SUPPLY_IMPOSSIBLE = "supply_impossible", "Supply impossible"
    OTHER = "other", "Other"


class Transition(models.TextChoices):
    REGISTER_ECOUNT = "register_ecount", "Register in E-COUNT"
    UPDATE_CLASSIFICATION = "update_classification", "Update item groups"
    COMPLETE_PURCHASE_ORDER = "complete_purchase_order", "Complete purchase order"
    RECEIVE_AT_WAREHOUSE = "receive_at_warehouse", "Receive at warehouse"
    DISPATCH_TO_BRANCHES = "dispatch_to_branches", "Dispatch to branches"
    CONFIRM_BRANCH_RECEIPT = "confirm_branch_receipt", "Confirm branch receipt"
    REPORT_LOGISTICS_ISSUE = "report_logistics_issue", "Report logistics issue"
    START_ALTERNATIVE_SOURCING = "start_alternative_sourcing", "Start alternative sourcing"
    TERMINATE_PROCESS = "terminate_process", "Terminate process"


@dataclass(frozen=True)
class Actor:
    uid: str
    name: str
    role: str | None = None


@dataclass(frozen=True)
class BranchRequirement:
    branch_id: str
    branch_name: str
    requested_quantity: int


@dataclass(frozen=True)
class BranchDispatchInfo:
    branch_id: str
    branch_name: str
    required_quantity: int
    dispatched_quantity: int
    is_dispatched: bool = False
    actual_dispatched_quantity: int | None = None
    dispatched_at: datetime | None = None
    dispatched_by_uid: str | None = None
    confirmed_quantity: int | None = None
    branch_receipt_memo: str = ""


@dataclass(frozen=True)
class StatusHistoryEntry:
    status: str
    updated_at: datetime
    updated_by_uid: str
    updated_by_name: str
    comments: str = ""


@dataclass(frozen=True)
class Classification:
    group1: str
    group2: str
    group3: str


@dataclass(frozen=True)
class EcountRegistration:
    registered_at: datetime
    registrar_uid: str


@dataclass(frozen=True)
class PurchaseOrderInfo:
    completed_at: datetime
    completer_uid: str
    expected_delivery_date: date
    expected_delivery_quantity: int
    actual_supplier: str
    memo: str = ""


@dataclass(frozen=True)
class WarehouseReceipt:
    received_at: datetime
    receiver_uid: str
    actual_received_quantity: int


@dataclass(frozen=True)
class DispatchProgress:
    ledger: tuple[BranchDispatchInfo, ...]
    remaining_quantity: int
    last_dispatched_at: datetime
    last_dispatcher_uid: str
    completed_at: datetime | None = None
    completer_uid: str | None = None
    memo: str = ""
    tracking_information: str = ""


@dataclass(frozen=True)
class ReceiptConfirmation:
    confirmed_at: datetime
    confirmer_uid: str


@dataclass(frozen=True)
class LogisticsIssue:
    reported_at: datetime
    reporter_uid: str
    reporter_name: str
    issue_type: str
    description: str
    urgency_level: str
    alternative_required: bool
    # None: unknown, -1: impossible, 0: no delay, >0: days
    estimated_delay: int | None = None


@dataclass(frozen=True)
class AlternativeSourcing:
    initiated_at: datetime
    initiator_uid: str
    initiator_name: str
    method: str
    description: str
    estimated_cost: Decimal | None = None
    estimated_delivery: date | None = None


@dataclass(frozen=True)
class ProcessTermination:
    terminated_at: datetime
    terminator_uid: str
    terminator_name: str
    reason: str
    final_notes: str


@dataclass(frozen=True)
class PurchaseRequest:
    id: str
    request_id: str
    part_number: str
    part_name: str
    importance: str
    requestor_uid: str
    requestor_name: str
    request_date: datetime
    branch_requirements: tuple[BranchRequirement, ...]
    total_requested_quantity: int
    current_status: str
    current_responsible_team: str
    status_history: tuple[StatusHistoryEntry, ...]
    created_at: datetime
    updated_at: datetime
    internal_part_id: str = ""
    price: Decimal | None = None
    currency: str = "KRW"
    classification: Classification | None = None
    initial_supplier: str | None = None
    notes: str = ""
    logistics_stock_quantity: int = 0
    set_id: str | None = None
    set_name: str | None = None
    is_part_of_set: bool = False
    part_order_in_set: int | None = None
    registration: EcountRegistration | None = None
    purchase_order: PurchaseOrderInfo | None = None
    warehouse_receipt: WarehouseReceipt | None = None
    dispatch: DispatchProgress | None = None
    receipt_confirmation: ReceiptConfirmation | None = None
    logistics_issue: LogisticsIssue | None = None
    alternative_sourcing: AlternativeSourcing | None = None
    process_termination: ProcessTermination | None = None
    status_comments: dict[str, str] = field(default_factory=dict)
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.current_status in TERMINAL_STATUSES

    @property
    def ledger(self) -> tuple[BranchDispatchInfo, ...]:
        return self.dispatch.ledger if self.dispatch else ()

    @property
    def actual_received_quantity(self) -> int | None:
        return self.warehouse_receipt.actual_received_quantity if self.warehouse_receipt else None


@dataclass(frozen=True)
class MultiPartRequest:
    id: str
    set_id: str
    set_name: str
    requestor_uid: str
    requestor_name: str
    request_date: datetime
    importance: str
    total_parts_count: int
    part_request_ids: tuple[str, ...]
    created_at: datetime
    updated_at: datetime
    set_description: str = ""
    overall_status: str = SetStatus.IN_PROGRESS
    completed_parts_count: int = 0
    allow_partial_dispatch: bool = True
    notes: str = ""
