from dataclasses import replace

from procurement.domain import BranchDispatchInfo
from procurement.exceptions import CapacityExceeded, ValidationError
from procurement.validation import boolean, integer


def initialize(branch_requirements, existing_ledger=None):
    """Seed one ledger row per branch requirement.

    Rows already present in ``existing_ledger`` (re-entry into a partial
    dispatch) are kept as they are, keyed by branch id.
    """
    existing = {row.branch_id: row for row in existing_ledger or ()}
    rows = []
    for requirement in branch_requirements:
        row = existing.get(requirement.branch_id)
        if row is None:
            row = BranchDispatchInfo(
                branch_id=requirement.branch_id,
                branch_name=requirement.branch_name,
                required_quantity=requirement.requested_quantity,
                dispatched_quantity=requirement.requested_quantity,
                is_dispatched=False,
            )
        rows.append(row)
    return tuple(rows)


def _find_index(rows, branch_id):
    for index, row in enumerate(rows):
        if row.branch_id == branch_id:
            return index
    raise ValidationError("branch_id", f"Branch {branch_id} is not part of this request.", branch_id=branch_id)


def _replace_row(rows, branch_id, **changes):
    index = _find_index(rows, branch_id)
    updated = list(rows)
    updated[index] = replace(rows[index], **changes)
    return tuple(updated)


def set_dispatched(rows, branch_id, dispatched):
    # capacity is checked once at commit time so a caller can toggle freely
    flag = boolean(dispatched, f"branch_dispatch_quantities.{branch_id}.is_dispatched")
    return _replace_row(rows, branch_id, is_dispatched=flag)


def set_dispatched_quantity(rows, branch_id, quantity):
    quantity = integer(quantity, f"branch_dispatch_quantities.{branch_id}.dispatched_quantity", minimum=0)
    return _replace_row(rows, branch_id, dispatched_quantity=quantity)


def total_planned(rows):
    return sum(row.dispatched_quantity for row in rows if row.is_dispatched)


def all_dispatched(rows):
    return bool(rows) and all(row.is_dispatched for row in rows)


def conservation_margin(rows, actual_received_quantity):
    return (actual_received_quantity or 0) - total_planned(rows)


def ensure_within_capacity(rows, actual_received_quantity):
    requested = total_planned(rows)
    available = actual_received_quantity or 0
    if requested > available:
        raise CapacityExceeded(requested=requested, available=available)
    return available - requested


def is_branch_fully_dispatched_across(rows_per_request, branch_name):
    matching = [row for rows in rows_per_request for row in rows if row.branch_name == branch_name]
    return bool(matching) and all(row.is_dispatched for row in matching)


def set_branch_dispatched_across(rows_per_request, branch_name, dispatched):
    """Toggle one branch by name on every request that carries it."""
    dispatched = boolean(dispatched, "dispatched")
    updated = []
    for rows in rows_per_request:
        updated.append(
            tuple(replace(row, is_dispatched=dispatched) if row.branch_name == branch_name else row for row in rows)
        )
    return updated


def apply_confirmations(rows, confirmations):
    """Return rows with ``confirmed_quantity`` set from ``{branch_id: (quantity, memo)}``.

    Every row must be confirmed; a confirmed quantity of zero is allowed.
    """
    updated = []
    for row in rows:
        if row.branch_id not in confirmations:
            raise ValidationError(
                f"confirmations.{row.branch_id}",
                f"Confirmed quantity for {row.branch_name} is required.",
                branch_id=row.branch_id,
            )
        quantity, memo = confirmations[row.branch_id]
        updated.append(replace(row, confirmed_quantity=quantity, branch_receipt_memo=memo or ""))
    return tuple(updated)


def dispatch_summary(rows):
    return ", ".join(f"{row.branch_name}: {row.dispatched_quantity}" for row in rows if row.is_dispatched)
