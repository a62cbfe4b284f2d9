import logging
import uuid
from collections.abc import Mapping

from django.conf import settings

from procurement import history
from procurement.domain import (
    BranchRequirement,
    Classification,
    Importance,
    MultiPartRequest,
    PurchaseRequest,
    RequestStatus,
    ResponsibleTeam,
    SetStatus,
)
from procurement.exceptions import ValidationError
from procurement.gateway import REQUESTS, SETS, InsertRecord
from procurement.identifiers import SystemClock, generate_internal_part_id, generate_request_id, generate_set_id
from procurement.validation import choice, decimal_value, integer, is_blank, text, validate_required

logger = logging.getLogger(__name__)

CLASSIFICATION_FIELDS = ("item_group1", "item_group2", "item_group3")


def _branch_requirements(raw, prefix):
    if raw is None or isinstance(raw, (str, Mapping)):
        raise ValidationError(f"{prefix}branch_requirements", "branch_requirements must be a list.")
    requirements = []
    seen = set()
    for index, item in enumerate(raw):
        item_prefix = f"{prefix}branch_requirements[{index}]."
        if not isinstance(item, Mapping):
            raise ValidationError(f"{prefix}branch_requirements[{index}]", "Each branch requirement must be an object.")
        validate_required(item, ["branch_id", "branch_name", "requested_quantity"], prefix=item_prefix)
        branch_id = str(item["branch_id"]).strip()
        if branch_id in seen:
            raise ValidationError(f"{item_prefix}branch_id", f"Branch {branch_id} is listed more than once.")
        seen.add(branch_id)
        requirements.append(
            BranchRequirement(
                branch_id=branch_id,
                branch_name=str(item["branch_name"]).strip(),
                requested_quantity=integer(item["requested_quantity"], f"{item_prefix}requested_quantity", minimum=0),
            )
        )
    # zero-quantity rows are dropped
    requested = tuple(requirement for requirement in requirements if requirement.requested_quantity > 0)
    if not requested:
        raise ValidationError(f"{prefix}branch_requirements", "Request a quantity for at least one branch.")
    return requested


def _classification(part, prefix):
    if all(is_blank(part.get(field)) for field in CLASSIFICATION_FIELDS):
        return None
    validate_required(part, CLASSIFICATION_FIELDS, prefix=prefix)
    return Classification(*(str(part[field]).strip() for field in CLASSIFICATION_FIELDS))


def normalize_part(part, index=None, default_importance=None):
    """Validate one part payload and return the values a new request is built from."""
    prefix = f"parts[{index}]." if index is not None else ""
    if not isinstance(part, Mapping):
        raise ValidationError(prefix.rstrip(".") or "part", "Each part must be an object.")
    validate_required(part, ["part_number", "part_name"], prefix=prefix)

    importance = part.get("importance")
    if is_blank(importance):
        importance = default_importance or Importance.MEDIUM
    price = part.get("price")
    stock = part.get("logistics_stock_quantity")
    requirements = _branch_requirements(part.get("branch_requirements"), prefix)
    logistics_stock_quantity = 0 if is_blank(stock) else integer(stock, f"{prefix}logistics_stock_quantity", minimum=0)

    return {
        "part_number": text(part, "part_number"),
        "part_name": text(part, "part_name"),
        "importance": choice(importance, f"{prefix}importance", Importance),
        "price": None if is_blank(price) else decimal_value(price, f"{prefix}price", minimum=0),
        "currency": text(part, "currency", getattr(settings, "PROCUREMENT_DEFAULT_CURRENCY", "KRW")),
        "classification": _classification(part, prefix),
        "initial_supplier": text(part, "initial_supplier") or None,
        "notes": text(part, "notes"),
        "branch_requirements": requirements,
        "logistics_stock_quantity": logistics_stock_quantity,
        "total_requested_quantity": sum(item.requested_quantity for item in requirements) + logistics_stock_quantity,
    }


class RequestCreationService:
    """Builds new requests and sets and inserts them in one atomic batch."""

    def __init__(self, gateway, clock=None):
        self.gateway = gateway
        self.clock = clock or SystemClock()

    def _build_request(self, values, actor, now, offset, comments, set_fields=None):
        return PurchaseRequest(
            id=str(uuid.uuid4()),
            request_id=generate_request_id(now, offset),
            internal_part_id=generate_internal_part_id(now, offset),
            requestor_uid=actor.uid,
            requestor_name=actor.name,
            request_date=now,
            current_status=RequestStatus.OPERATIONS_SUBMITTED,
            current_responsible_team=ResponsibleTeam.LOGISTICS,
            status_history=(history.build_entry(RequestStatus.OPERATIONS_SUBMITTED, actor, now, comments),),
            created_at=now,
            updated_at=now,
            **values,
            **(set_fields or {}),
        )

    def create_purchase_request(self, part, actor) -> PurchaseRequest:
        values = normalize_part(part)
        now = self.clock.now()
        request = self._build_request(values, actor, now, 0, text(part, "comments", "Part request submitted"))
        self.gateway.batch_insert([InsertRecord(REQUESTS, request)])
        logger.info("Purchase request created", extra={"request_pk": request.id, "to_status": request.current_status})
        return request

    def create_individual_parts_request(self, parts, actor) -> list[PurchaseRequest]:
        if not parts:
            raise ValidationError("parts", "At least one part is required.")
        # validate everything before building anything so one bad part inserts nothing
        normalized = [normalize_part(part, index) for index, part in enumerate(parts)]
        now = self.clock.now()
        requests = [
            self._build_request(values, actor, now, index, "Individual part request")
            for index, values in enumerate(normalized)
        ]
        self.gateway.batch_insert([InsertRecord(REQUESTS, request) for request in requests])
        logger.info("Individual part requests created", extra={"count": len(requests)})
        return requests

    def create_multi_part_request(self, set_data, parts, actor) -> tuple[MultiPartRequest, list[PurchaseRequest]]:
        if not isinstance(set_data, Mapping):
            raise ValidationError("set_name", "Set details are required.")
        validate_required(set_data, ["set_name"])
        if not parts:
            raise ValidationError("parts", "At least one part is required.")
        set_importance = choice(set_data.get("importance") or Importance.MEDIUM, "importance", Importance)
        normalized = [
            normalize_part({**part, "importance": set_importance} if isinstance(part, Mapping) else part, index)
            for index, part in enumerate(parts)
        ]

        now = self.clock.now()
        set_id = generate_set_id(now)
        set_name = text(set_data, "set_name")
        members = [
            self._build_request(
                values,
                actor,
                now,
                index,
                f"Set request: {set_name}",
                set_fields={
                    "set_id": set_id,
                    "set_name": set_name,
                    "is_part_of_set": True,
                    "part_order_in_set": index + 1,
                },
            )
            for index, values in enumerate(normalized)
        ]
        set_record = MultiPartRequest(
            id=str(uuid.uuid4()),
            set_id=set_id,
            set_name=set_name,
            set_description=text(set_data, "set_description"),
            requestor_uid=actor.uid,
            requestor_name=actor.name,
            request_date=now,
            importance=set_importance,
            overall_status=SetStatus.IN_PROGRESS,
            completed_parts_count=0,
            total_parts_count=len(members),
            part_request_ids=tuple(member.id for member in members),
            allow_partial_dispatch=True,
            notes=text(set_data, "notes"),
            created_at=now,
            updated_at=now,
        )
        self.gateway.batch_insert(
            [InsertRecord(REQUESTS, member) for member in members] + [InsertRecord(SETS, set_record)]
        )
        logger.info("Multi-part request created", extra={"set_id": set_id, "count": len(members)})
        return set_record, members
