import random
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase
from rest_framework.test import APIClient

from core.models import AuditLog, Branch, OutboxEvent
from procurement import ledger
from procurement import models as orm
from procurement.bulk import BulkTransitionProcessor
from procurement.creation import RequestCreationService
from procurement.domain import (
    Actor,
    BranchDispatchInfo,
    BranchRequirement,
    RequestStatus,
    ResponsibleTeam,
    SetStatus,
    Transition,
)
from procurement.exceptions import (
    CapacityExceeded,
    MixedStateError,
    PartialCommitError,
    RequestNotFound,
    StateMismatch,
    TerminalStateError,
    ValidationError,
)
from procurement.gateway import DjangoPersistenceGateway, InMemoryPersistenceGateway, PersistenceError
from procurement.identifiers import generate_request_id, generate_set_id
from procurement.sets import SetAggregator, derive_overall_status
from procurement.state_machine import RequestStateMachine

OPERATIONS = Actor(uid="ops-1", name="Operations Kim", role="operations")
LOGISTICS = Actor(uid="log-1", name="Logistics Park", role="logistics")

PO_DATA = {"expected_delivery_date": "2024-03-20", "expected_delivery_quantity": 110}
ITEM_GROUPS = {"item_group1": "Brakes", "item_group2": "Pads", "item_group3": "Front"}


class FrozenClock:
    def __init__(self, start=None):
        self.current = start or datetime(2024, 3, 4, 9, 0, tzinfo=dt_timezone.utc)

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


def part_payload(**overrides):
    payload = {
        "part_number": "BP-100",
        "part_name": "Brake pad",
        "importance": "high",
        "initial_supplier": "Acme Parts",
        "branch_requirements": [
            {"branch_id": "b-1", "branch_name": "Gangnam", "requested_quantity": 60},
            {"branch_id": "b-2", "branch_name": "Mapo", "requested_quantity": 50},
        ],
    }
    payload.update(overrides)
    return payload


def dispatch_rows(*rows):
    return {
        "branch_dispatch_quantities": [
            {"branch_id": branch_id, "dispatched_quantity": quantity, "is_dispatched": dispatched}
            for branch_id, quantity, dispatched in rows
        ]
    }


class WorkflowHarness:
    """Shared setup for tests that drive requests through the workflow."""

    def make_workflow(self, gateway=None):
        self.clock = FrozenClock()
        self.gateway = gateway if gateway is not None else InMemoryPersistenceGateway()
        self.machine = RequestStateMachine(self.gateway, clock=self.clock)
        self.creator = RequestCreationService(self.gateway, clock=self.clock)

    def create(self, **overrides):
        return self.creator.create_purchase_request(part_payload(**overrides), OPERATIONS).id

    def receive(self, request_pk, quantity=100):
        self.machine.execute(request_pk, Transition.COMPLETE_PURCHASE_ORDER, PO_DATA, LOGISTICS)
        return self.machine.execute(
            request_pk,
            Transition.RECEIVE_AT_WAREHOUSE,
            {"actual_receipt_date": "2024-03-18", "actual_received_quantity": quantity},
            LOGISTICS,
        )

    def confirm_single_branch(self, request_pk, quantity):
        self.machine.execute(
            request_pk,
            Transition.COMPLETE_PURCHASE_ORDER,
            {"expected_delivery_date": "2024-03-20", "expected_delivery_quantity": quantity},
            LOGISTICS,
        )
        self.machine.execute(
            request_pk,
            Transition.RECEIVE_AT_WAREHOUSE,
            {"actual_receipt_date": "2024-03-18", "actual_received_quantity": quantity},
            LOGISTICS,
        )
        self.machine.execute(request_pk, Transition.DISPATCH_TO_BRANCHES, dispatch_rows(("b-1", quantity, True)), LOGISTICS)
        return self.machine.execute(
            request_pk, Transition.CONFIRM_BRANCH_RECEIPT, {"confirmations": {"b-1": quantity}}, OPERATIONS
        )


class IdentifierTests(SimpleTestCase):
    def test_request_ids_carry_prefix_and_are_ordered_by_offset(self):
        now = datetime(2024, 3, 4, 9, 0, tzinfo=dt_timezone.utc)
        first = generate_request_id(now, 0)
        second = generate_request_id(now, 1)

        self.assertTrue(first.startswith("REQ-"))
        self.assertEqual(len(first.split("-")[2]), 6)
        self.assertLess(first.split("-")[1], second.split("-")[1])
        self.assertTrue(generate_set_id(now).startswith("SET-"))


class RequestStateMachineTests(WorkflowHarness, SimpleTestCase):
    def setUp(self):
        self.make_workflow()

    def test_new_request_starts_with_logistics_and_one_history_entry(self):
        request = self.gateway.get(self.create())

        self.assertEqual(request.current_status, RequestStatus.OPERATIONS_SUBMITTED)
        self.assertEqual(request.current_responsible_team, ResponsibleTeam.LOGISTICS)
        self.assertEqual(request.total_requested_quantity, 110)
        self.assertEqual([entry.status for entry in request.status_history], ["operations_submitted"])
        self.assertEqual(request.status_history[0].comments, "Part request submitted")

    def test_register_ecount_requires_all_item_groups(self):
        request_pk = self.create()

        with self.assertRaises(ValidationError) as ctx:
            self.machine.execute(request_pk, Transition.REGISTER_ECOUNT, {"item_group1": "Brakes"}, LOGISTICS)

        self.assertEqual(ctx.exception.field, "item_group2")
        self.assertEqual(len(self.gateway.get(request_pk).status_history), 1)

    def test_register_ecount_records_classification(self):
        request = self.machine.execute(self.create(), Transition.REGISTER_ECOUNT, ITEM_GROUPS, LOGISTICS)

        self.assertEqual(request.current_status, RequestStatus.ECOUNT_REGISTERED)
        self.assertEqual(request.classification.group2, "Pads")
        self.assertEqual(request.registration.registrar_uid, "log-1")

    def test_update_classification_keeps_status_and_appends_history(self):
        request = self.machine.execute(self.create(), Transition.UPDATE_CLASSIFICATION, ITEM_GROUPS, LOGISTICS)

        self.assertEqual(request.current_status, RequestStatus.OPERATIONS_SUBMITTED)
        self.assertEqual(len(request.status_history), 2)
        self.assertEqual(request.status_history[-1].comments, "Item groups updated: Brakes > Pads > Front")

    def test_purchase_order_from_submitted_registers_ecount_implicitly(self):
        request = self.machine.execute(self.create(), Transition.COMPLETE_PURCHASE_ORDER, PO_DATA, LOGISTICS)

        self.assertEqual(request.current_status, RequestStatus.PO_COMPLETED)
        self.assertIsNotNone(request.registration)
        self.assertEqual(request.purchase_order.expected_delivery_quantity, 110)
        self.assertEqual(
            request.status_history[-1].comments, "E-COUNT registration and purchase order completed"
        )

    def test_supplier_falls_back_to_initial_supplier(self):
        request = self.machine.execute(self.create(), Transition.COMPLETE_PURCHASE_ORDER, PO_DATA, LOGISTICS)

        self.assertEqual(request.purchase_order.actual_supplier, "Acme Parts")

    def test_explicit_supplier_wins_over_initial_supplier(self):
        data = {**PO_DATA, "actual_supplier": "Busan Trading"}
        request = self.machine.execute(self.create(), Transition.COMPLETE_PURCHASE_ORDER, data, LOGISTICS)

        self.assertEqual(request.purchase_order.actual_supplier, "Busan Trading")

    def test_missing_supplier_is_rejected(self):
        request_pk = self.create(initial_supplier="")

        with self.assertRaises(ValidationError) as ctx:
            self.machine.execute(request_pk, Transition.COMPLETE_PURCHASE_ORDER, PO_DATA, LOGISTICS)

        self.assertEqual(ctx.exception.field, "actual_supplier")

    def test_wrong_source_status_is_a_state_mismatch(self):
        request_pk = self.create()

        with self.assertRaises(StateMismatch) as ctx:
            self.machine.execute(
                request_pk,
                Transition.RECEIVE_AT_WAREHOUSE,
                {"actual_receipt_date": "2024-03-18", "actual_received_quantity": 10},
                LOGISTICS,
            )

        self.assertEqual(ctx.exception.actual, RequestStatus.OPERATIONS_SUBMITTED)
        self.assertEqual(ctx.exception.expected, ["po_completed"])

    def test_unknown_transition_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            self.machine.execute(self.create(), "fly_away", {}, LOGISTICS)

        self.assertEqual(ctx.exception.field, "transition")

    def test_dispatch_over_received_quantity_is_rejected(self):
        request_pk = self.create()
        self.receive(request_pk, quantity=100)

        with self.assertRaises(CapacityExceeded) as ctx:
            self.machine.execute(
                request_pk, Transition.DISPATCH_TO_BRANCHES, dispatch_rows(("b-1", 60, True), ("b-2", 50, True)), LOGISTICS
            )

        self.assertEqual((ctx.exception.requested, ctx.exception.available), (110, 100))
        request = self.gateway.get(request_pk)
        self.assertEqual(request.current_status, RequestStatus.WAREHOUSE_RECEIVED)
        self.assertEqual(len(request.status_history), 3)

    def test_partial_dispatch_keeps_logistics_responsible(self):
        request_pk = self.create()
        self.receive(request_pk, quantity=100)
        self.clock.advance(hours=1)

        request = self.machine.execute(
            request_pk, Transition.DISPATCH_TO_BRANCHES, dispatch_rows(("b-1", 60, True), ("b-2", 50, False)), LOGISTICS
        )

        self.assertEqual(request.current_status, RequestStatus.PARTIAL_DISPATCHED)
        self.assertEqual(request.current_responsible_team, ResponsibleTeam.LOGISTICS)
        self.assertEqual(request.dispatch.remaining_quantity, 40)
        self.assertEqual(request.ledger[0].dispatched_at, self.clock.now())
        self.assertIsNone(request.ledger[1].dispatched_at)
        self.assertEqual(request.status_history[-1].comments, "Partial branch dispatch (Gangnam: 60)")

    def test_completing_dispatch_hands_over_to_operations(self):
        request_pk = self.create()
        self.receive(request_pk, quantity=100)
        self.machine.execute(
            request_pk, Transition.DISPATCH_TO_BRANCHES, dispatch_rows(("b-1", 60, True), ("b-2", 50, False)), LOGISTICS
        )

        request = self.machine.execute(
            request_pk, Transition.DISPATCH_TO_BRANCHES, dispatch_rows(("b-1", 60, True), ("b-2", 40, True)), LOGISTICS
        )

        self.assertEqual(request.current_status, RequestStatus.BRANCH_DISPATCHED)
        self.assertEqual(request.current_responsible_team, ResponsibleTeam.OPERATIONS)
        self.assertEqual(request.dispatch.remaining_quantity, 0)
        self.assertIsNotNone(request.dispatch.completed_at)

    def test_dispatched_branch_row_cannot_be_changed(self):
        request_pk = self.create()
        self.receive(request_pk, quantity=100)
        self.machine.execute(
            request_pk, Transition.DISPATCH_TO_BRANCHES, dispatch_rows(("b-1", 60, True), ("b-2", 50, False)), LOGISTICS
        )

        with self.assertRaises(ValidationError) as ctx:
            self.machine.execute(
                request_pk, Transition.DISPATCH_TO_BRANCHES, dispatch_rows(("b-1", 30, True), ("b-2", 40, True)), LOGISTICS
            )

        self.assertEqual(ctx.exception.details["branch_id"], "b-1")

    def test_dispatch_requires_at_least_one_branch(self):
        request_pk = self.create()
        self.receive(request_pk)

        with self.assertRaises(ValidationError):
            self.machine.execute(
                request_pk,
                Transition.DISPATCH_TO_BRANCHES,
                dispatch_rows(("b-1", 60, False), ("b-2", 40, False)),
                LOGISTICS,
            )

    def test_dispatch_rejects_unknown_branch(self):
        request_pk = self.create()
        self.receive(request_pk)

        with self.assertRaises(ValidationError) as ctx:
            self.machine.execute(request_pk, Transition.DISPATCH_TO_BRANCHES, dispatch_rows(("b-9", 5, True)), LOGISTICS)

        self.assertEqual(ctx.exception.field, "branch_dispatch_quantities.b-9")

    def test_branch_receipt_confirmation_completes_request(self):
        request_pk = self.create()
        self.receive(request_pk)
        self.machine.execute(
            request_pk, Transition.DISPATCH_TO_BRANCHES, dispatch_rows(("b-1", 60, True), ("b-2", 40, True)), LOGISTICS
        )

        request = self.machine.execute(
            request_pk,
            Transition.CONFIRM_BRANCH_RECEIPT,
            {"confirmations": {"b-1": 60, "b-2": {"confirmed_quantity": 38, "branch_receipt_memo": "2 damaged"}}},
            OPERATIONS,
        )

        self.assertEqual(request.current_status, RequestStatus.BRANCH_RECEIVED_CONFIRMED)
        self.assertEqual(request.current_responsible_team, ResponsibleTeam.COMPLETED)
        self.assertEqual([row.confirmed_quantity for row in request.ledger], [60, 38])
        self.assertEqual(request.ledger[1].branch_receipt_memo, "2 damaged")

    def test_branch_receipt_confirmation_requires_every_branch(self):
        request_pk = self.create()
        self.receive(request_pk)
        self.machine.execute(
            request_pk, Transition.DISPATCH_TO_BRANCHES, dispatch_rows(("b-1", 60, True), ("b-2", 40, True)), LOGISTICS
        )

        with self.assertRaises(ValidationError) as ctx:
            self.machine.execute(request_pk, Transition.CONFIRM_BRANCH_RECEIPT, {"confirmations": {"b-1": 60}}, OPERATIONS)

        self.assertEqual(ctx.exception.field, "confirmations.b-2")

    def test_issue_alternative_sourcing_and_termination(self):
        request_pk = self.create()
        issue = self.machine.execute(
            request_pk,
            Transition.REPORT_LOGISTICS_ISSUE,
            {
                "issue_type": "supply_delay",
                "description": "Vendor is two weeks late",
                "urgency_level": "high",
                "alternative_required": True,
                "estimated_delay": 14,
            },
            LOGISTICS,
        )
        self.assertEqual(issue.current_status, RequestStatus.LOGISTICS_ISSUE_REPORTED)
        self.assertEqual(issue.logistics_issue.estimated_delay, 14)

        sourcing = self.machine.execute(
            request_pk,
            Transition.START_ALTERNATIVE_SOURCING,
            {"method": "direct_purchase", "description": "Buy locally", "estimated_cost": "120.50"},
            LOGISTICS,
        )
        self.assertEqual(sourcing.alternative_sourcing.estimated_cost, Decimal("120.50"))

        terminated = self.machine.execute(
            request_pk,
            Transition.TERMINATE_PROCESS,
            {"reason": "alternative_completed", "final_notes": "Covered by local purchase"},
            LOGISTICS,
        )
        self.assertEqual(terminated.current_status, RequestStatus.PROCESS_TERMINATED)
        self.assertEqual(terminated.current_responsible_team, ResponsibleTeam.COMPLETED)
        self.assertEqual(terminated.status_history[-1].comments, "Process terminated: Alternative completed")

    def test_terminal_requests_reject_every_transition(self):
        request_pk = self.create()
        self.machine.execute(
            request_pk, Transition.TERMINATE_PROCESS, {"reason": "request_cancelled", "final_notes": "Duplicate"}, LOGISTICS
        )
        before = self.gateway.get(request_pk)

        for transition in Transition:
            with self.assertRaises(TerminalStateError):
                self.machine.execute(request_pk, transition, {}, LOGISTICS)

        after = self.gateway.get(request_pk)
        self.assertEqual(after.status_history, before.status_history)
        self.assertEqual(after.version, before.version)

    def test_explicit_comment_is_stored_per_status(self):
        data = {**PO_DATA, "comments": "Ordered by phone"}
        request = self.machine.execute(self.create(), Transition.COMPLETE_PURCHASE_ORDER, data, LOGISTICS)

        self.assertEqual(request.status_comments, {"po_completed": "Ordered by phone"})
        self.assertEqual(request.status_history[-1].comments, "Ordered by phone")

    def test_history_grows_by_one_entry_per_transition_in_time_order(self):
        request_pk = self.create()
        steps = [
            (Transition.REGISTER_ECOUNT, ITEM_GROUPS),
            (Transition.COMPLETE_PURCHASE_ORDER, PO_DATA),
            (Transition.RECEIVE_AT_WAREHOUSE, {"actual_receipt_date": "2024-03-18", "actual_received_quantity": 100}),
        ]
        for expected_length, (transition, data) in enumerate(steps, start=2):
            self.clock.advance(minutes=5)
            request = self.machine.execute(request_pk, transition, data, LOGISTICS)
            self.assertEqual(len(request.status_history), expected_length)

        stamps = [entry.updated_at for entry in request.status_history]
        self.assertEqual(stamps, sorted(stamps))
        self.assertEqual(request.status_history[-1].status, request.current_status)

    def test_stale_version_is_rejected(self):
        request_pk = self.create()
        stale = self.gateway.get(request_pk)
        result = self.machine.apply(stale, Transition.REGISTER_ECOUNT, ITEM_GROUPS, LOGISTICS)
        self.machine.execute(request_pk, Transition.UPDATE_CLASSIFICATION, ITEM_GROUPS, LOGISTICS)

        with self.assertRaises(StateMismatch) as ctx:
            self.gateway.batch_update([result.to_update(stale)])

        self.assertEqual(ctx.exception.details["reason"], "stale_version")

    def test_dispatch_never_exceeds_received_quantity(self):
        rng = random.Random(20240304)
        for _ in range(40):
            requirements = [
                {"branch_id": f"b-{index}", "branch_name": f"Branch {index}", "requested_quantity": rng.randint(1, 80)}
                for index in range(rng.randint(1, 3))
            ]
            received = rng.randint(1, 150)
            request_pk = self.create(branch_requirements=requirements)
            request = self.receive(request_pk, quantity=received)

            rows = [(item["branch_id"], rng.randint(0, 90), rng.random() < 0.6) for item in requirements]
            try:
                result = self.machine.apply(request, Transition.DISPATCH_TO_BRANCHES, dispatch_rows(*rows), LOGISTICS)
            except CapacityExceeded as exc:
                self.assertGreater(exc.requested, received)
                continue
            except ValidationError:
                self.assertFalse(any(dispatched for _, _, dispatched in rows))
                continue

            progress = result.updated_fields["dispatch"]
            self.assertLessEqual(ledger.total_planned(progress.ledger), received)
            self.assertEqual(progress.remaining_quantity, received - ledger.total_planned(progress.ledger))


class BranchDispatchLedgerTests(SimpleTestCase):
    def setUp(self):
        self.requirements = (
            BranchRequirement("b-1", "Gangnam", 60),
            BranchRequirement("b-2", "Mapo", 50),
        )

    def test_initialize_defaults_to_required_quantity(self):
        rows = ledger.initialize(self.requirements)

        self.assertEqual([row.dispatched_quantity for row in rows], [60, 50])
        self.assertFalse(any(row.is_dispatched for row in rows))

    def test_initialize_keeps_existing_rows(self):
        existing = (BranchDispatchInfo("b-1", "Gangnam", 60, 55, is_dispatched=True),)

        rows = ledger.initialize(self.requirements, existing)

        self.assertEqual(rows[0], existing[0])
        self.assertEqual(rows[1].dispatched_quantity, 50)

    def test_setters_validate_input(self):
        rows = ledger.initialize(self.requirements)

        with self.assertRaises(ValidationError):
            ledger.set_dispatched_quantity(rows, "b-1", -1)
        with self.assertRaises(ValidationError):
            ledger.set_dispatched(rows, "b-1", "maybe")
        with self.assertRaises(ValidationError):
            ledger.set_dispatched(rows, "b-9", True)

    def test_capacity_and_margin(self):
        rows = ledger.set_dispatched(ledger.initialize(self.requirements), "b-1", True)

        self.assertEqual(ledger.conservation_margin(rows, 100), 40)
        self.assertEqual(ledger.ensure_within_capacity(rows, 100), 40)
        with self.assertRaises(CapacityExceeded):
            ledger.ensure_within_capacity(rows, 59)

    def test_branch_toggle_across_requests(self):
        rows = [ledger.initialize(self.requirements), ledger.initialize(self.requirements[:1])]

        toggled = ledger.set_branch_dispatched_across(rows, "Gangnam", True)

        self.assertTrue(ledger.is_branch_fully_dispatched_across(toggled, "Gangnam"))
        self.assertFalse(ledger.is_branch_fully_dispatched_across(toggled, "Mapo"))
        self.assertFalse(ledger.is_branch_fully_dispatched_across(toggled, "Songpa"))

    def test_zero_confirmation_is_allowed(self):
        rows = ledger.initialize(self.requirements)

        confirmed = ledger.apply_confirmations(rows, {"b-1": (0, "lost"), "b-2": (50, "")})

        self.assertEqual([row.confirmed_quantity for row in confirmed], [0, 50])


class BulkTransitionTests(WorkflowHarness, SimpleTestCase):
    def setUp(self):
        self.make_workflow()
        self.processor = BulkTransitionProcessor(self.gateway, self.machine, clock=self.clock)

    def test_prepare_rejects_mixed_statuses(self):
        first, second = self.create(), self.create()
        self.machine.execute(second, Transition.COMPLETE_PURCHASE_ORDER, PO_DATA, LOGISTICS)

        with self.assertRaises(MixedStateError) as ctx:
            self.processor.prepare([first, second])

        self.assertEqual(ctx.exception.statuses, ["operations_submitted", "po_completed"])

    def test_prepare_rejects_empty_duplicate_and_oversized_batches(self):
        request_pk = self.create()

        with self.assertRaises(ValidationError):
            self.processor.prepare([])
        with self.assertRaises(ValidationError):
            self.processor.prepare([request_pk, request_pk])
        small = BulkTransitionProcessor(self.gateway, self.machine, clock=self.clock, max_items=1)
        with self.assertRaises(ValidationError):
            small.prepare([request_pk, self.create()])

    def test_prepare_rejects_status_without_bulk_transition(self):
        request_pk = self.create()
        self.machine.execute(request_pk, Transition.REGISTER_ECOUNT, ITEM_GROUPS, LOGISTICS)

        with self.assertRaises(ValidationError):
            self.processor.prepare([request_pk])

    def test_broadcast_purchase_order_values(self):
        request_pks = [self.create(), self.create()]
        plan = self.processor.prepare(request_pks)
        plan.broadcast("expected_delivery_date", "2024-04-01")
        plan.override(request_pks[1], actual_supplier="Busan Trading")

        result = self.processor.commit(plan, LOGISTICS)

        self.assertEqual(result.transition, Transition.COMPLETE_PURCHASE_ORDER)
        self.assertEqual(result.processed, request_pks)
        first, second = self.gateway.get_many(request_pks)
        self.assertEqual(first.purchase_order.actual_supplier, "Acme Parts")
        self.assertEqual(second.purchase_order.actual_supplier, "Busan Trading")
        self.assertEqual(first.purchase_order.expected_delivery_quantity, 110)
        self.assertTrue(first.status_history[-1].comments.startswith("Bulk processing: "))

    def test_broadcast_rejects_fields_of_other_transitions(self):
        plan = self.processor.prepare([self.create()])

        with self.assertRaises(ValidationError):
            plan.broadcast("actual_received_quantity", 5)

    def test_dispatch_rows_cannot_be_broadcast(self):
        request_pk = self.create()
        self.receive(request_pk)
        plan = self.processor.prepare([request_pk])

        with self.assertRaises(ValidationError) as ctx:
            plan.broadcast("branch_dispatch_quantities", [{"branch_id": "b-1", "dispatched_quantity": 60}])

        self.assertEqual(ctx.exception.field, "branch_dispatch_quantities")
        self.assertEqual(plan.branch_names, ["Gangnam", "Mapo"])
        self.assertFalse(plan.is_branch_fully_dispatched("Gangnam"))

    def test_override_rejects_malformed_dispatch_rows(self):
        request_pk = self.create()
        self.receive(request_pk)
        plan = self.processor.prepare([request_pk])

        for rows in (["b-1"], "b-1", {"branch_id": "b-1"}, 5):
            with self.assertRaises(ValidationError) as ctx:
                plan.override(request_pk, branch_dispatch_quantities=rows)
            self.assertEqual(ctx.exception.field, "branch_dispatch_quantities")

        plan.override(request_pk, branch_dispatch_quantities=[{"branch_id": "b-1", "is_dispatched": True}])
        self.assertTrue(plan.is_branch_fully_dispatched("Gangnam"))

    def test_one_invalid_request_rejects_the_whole_batch(self):
        request_pks = [self.create(part_name=f"Part {index}") for index in range(3)]
        for request_pk in request_pks:
            self.machine.execute(request_pk, Transition.COMPLETE_PURCHASE_ORDER, PO_DATA, LOGISTICS)
        plan = self.processor.prepare(request_pks)
        plan.override(request_pks[1], actual_receipt_date=None)

        with self.assertRaises(ValidationError) as ctx:
            self.processor.commit(plan, LOGISTICS)

        self.assertEqual(ctx.exception.details["request_pk"], request_pks[1])
        self.assertTrue(ctx.exception.message.startswith("Part 1: "))
        for request in self.gateway.get_many(request_pks):
            self.assertEqual(request.current_status, RequestStatus.PO_COMPLETED)
            self.assertEqual(len(request.status_history), 2)

    def test_branch_toggles_apply_to_every_request(self):
        requirements = [
            {"branch_id": "b-1", "branch_name": "Gangnam", "requested_quantity": 30},
            {"branch_id": "b-2", "branch_name": "Mapo", "requested_quantity": 20},
        ]
        request_pks = [self.create(branch_requirements=requirements) for _ in range(2)]
        for request_pk in request_pks:
            self.receive(request_pk, quantity=100)

        plan = self.processor.prepare(request_pks)
        self.assertEqual(plan.branch_names, ["Gangnam", "Mapo"])
        plan.set_branch_dispatched("Gangnam", True)
        self.assertTrue(plan.is_branch_fully_dispatched("Gangnam"))
        self.assertFalse(plan.is_branch_fully_dispatched("Mapo"))
        self.processor.commit(plan, LOGISTICS)

        for request in self.gateway.get_many(request_pks):
            self.assertEqual(request.current_status, RequestStatus.PARTIAL_DISPATCHED)
            self.assertEqual(request.dispatch.remaining_quantity, 70)

        plan = self.processor.prepare(request_pks)
        self.assertTrue(plan.is_branch_fully_dispatched("Gangnam"))
        plan.set_branch_dispatched("Mapo", True)
        plan.set_dispatched_quantity(request_pks[0], "b-2", 15)
        result = self.processor.commit(plan, LOGISTICS)

        self.assertEqual(set(result.target_statuses.values()), {RequestStatus.BRANCH_DISPATCHED})
        first = self.gateway.get(request_pks[0])
        self.assertEqual(first.dispatch.remaining_quantity, 55)
        self.assertEqual(first.current_responsible_team, ResponsibleTeam.OPERATIONS)

    def test_commit_rechecks_status_changed_after_prepare(self):
        request_pk = self.create()
        plan = self.processor.prepare([request_pk])
        plan.broadcast("expected_delivery_date", "2024-04-01")
        self.machine.execute(request_pk, Transition.COMPLETE_PURCHASE_ORDER, PO_DATA, LOGISTICS)

        with self.assertRaises(StateMismatch):
            self.processor.commit(plan, LOGISTICS)

    def test_failed_atomic_write_leaves_every_request_unchanged(self):
        request_pks = [self.create() for _ in range(3)]
        self.gateway.fail_on.add(request_pks[2])
        plan = self.processor.prepare(request_pks)
        plan.broadcast("expected_delivery_date", "2024-04-01")

        with self.assertRaises(PersistenceError):
            self.processor.commit(plan, LOGISTICS)

        for request in self.gateway.get_many(request_pks):
            self.assertEqual(request.current_status, RequestStatus.OPERATIONS_SUBMITTED)

    def test_non_atomic_storage_reports_partial_commit(self):
        self.make_workflow(InMemoryPersistenceGateway(atomic=False))
        processor = BulkTransitionProcessor(self.gateway, self.machine, clock=self.clock)
        request_pks = [self.create() for _ in range(3)]
        self.gateway.fail_on.add(request_pks[1])
        plan = processor.prepare(request_pks)
        plan.broadcast("expected_delivery_date", "2024-04-01")

        with self.assertLogs("procurement.bulk", level="ERROR"):
            with self.assertRaises(PartialCommitError) as ctx:
                processor.commit(plan, LOGISTICS)

        self.assertEqual(ctx.exception.succeeded, [request_pks[0], request_pks[2]])
        self.assertEqual(ctx.exception.failed, [request_pks[1]])
        self.assertEqual(self.gateway.get(request_pks[1]).current_status, RequestStatus.OPERATIONS_SUBMITTED)
        self.assertEqual(self.gateway.get(request_pks[2]).current_status, RequestStatus.PO_COMPLETED)


class SetTests(WorkflowHarness, SimpleTestCase):
    def setUp(self):
        self.make_workflow()
        self.aggregator = SetAggregator(self.gateway, clock=self.clock)

    def create_set(self, count=3, **set_data):
        parts = [
            part_payload(
                part_number=f"P-{index}",
                part_name=f"Part {index}",
                importance="low",
                branch_requirements=[{"branch_id": "b-1", "branch_name": "Gangnam", "requested_quantity": 2}],
            )
            for index in range(count)
        ]
        return self.creator.create_multi_part_request({"set_name": "Front axle kit", **set_data}, parts, OPERATIONS)

    def test_creating_a_set_links_every_part(self):
        set_record, members = self.create_set(importance="urgent")

        self.assertEqual(set_record.total_parts_count, 3)
        self.assertEqual(set_record.part_request_ids, tuple(member.id for member in members))
        self.assertEqual({member.set_id for member in members}, {set_record.set_id})
        self.assertEqual([member.part_order_in_set for member in members], [1, 2, 3])
        self.assertEqual({member.importance for member in members}, {"urgent"})
        self.assertEqual(members[0].status_history[0].comments, "Set request: Front axle kit")

        progress = self.aggregator.progress(set_record.set_id)
        self.assertEqual(progress.progress_percentage, 0.0)
        self.assertEqual(progress.pending_parts, 3)
        self.assertEqual(progress.overall_status, SetStatus.IN_PROGRESS)

    def test_progress_follows_member_status(self):
        set_record, members = self.create_set()
        self.confirm_single_branch(members[0].id, 2)
        self.machine.execute(members[1].id, Transition.COMPLETE_PURCHASE_ORDER, PO_DATA, LOGISTICS)

        progress = self.aggregator.progress(set_record.set_id)

        self.assertEqual((progress.completed_parts, progress.in_progress_parts, progress.pending_parts), (1, 1, 1))
        self.assertAlmostEqual(progress.progress_percentage, 100 / 3)
        self.assertEqual(progress.overall_status, SetStatus.PARTIAL_COMPLETE)
        self.assertEqual(self.gateway.get_set(set_record.set_id).completed_parts_count, 0)

    def test_refresh_writes_cached_counters(self):
        set_record, members = self.create_set(count=2)
        for member in members:
            self.confirm_single_branch(member.id, 2)

        progress = self.aggregator.refresh(set_record.set_id)

        stored = self.gateway.get_set(set_record.set_id)
        self.assertEqual(progress.overall_status, SetStatus.COMPLETE)
        self.assertEqual(stored.overall_status, SetStatus.COMPLETE)
        self.assertEqual(stored.completed_parts_count, 2)
        self.assertEqual(progress.progress_percentage, 100.0)
        self.assertEqual(progress.completed_parts, progress.total_parts)

    def test_empty_set_is_never_complete(self):
        self.assertEqual(derive_overall_status(0, 0), SetStatus.IN_PROGRESS)

    def test_unknown_set_is_not_found(self):
        with self.assertRaises(RequestNotFound):
            self.aggregator.progress("SET-MISSING")

    def test_invalid_part_inserts_nothing(self):
        parts = [part_payload(), part_payload(part_name="")]

        with self.assertRaises(ValidationError) as ctx:
            self.creator.create_multi_part_request({"set_name": "Broken kit"}, parts, OPERATIONS)

        self.assertEqual(ctx.exception.field, "parts[1].part_name")
        self.assertEqual(self.gateway.requests, {})
        self.assertEqual(self.gateway.sets, {})

    def test_individual_parts_are_created_together_or_not_at_all(self):
        with self.assertRaises(ValidationError):
            self.creator.create_individual_parts_request([part_payload(), part_payload(price="-1")], OPERATIONS)
        self.assertEqual(self.gateway.requests, {})

        created = self.creator.create_individual_parts_request([part_payload(), part_payload()], OPERATIONS)
        self.assertEqual(len(created), 2)
        self.assertEqual({request.set_id for request in created}, {None})
        self.assertEqual(created[0].status_history[0].comments, "Individual part request")

    def test_part_needs_a_branch_with_quantity(self):
        empty_rows = [[], [{"branch_id": "b-1", "branch_name": "Gangnam", "requested_quantity": 0}]]
        for rows in empty_rows:
            with self.assertRaises(ValidationError) as ctx:
                self.creator.create_purchase_request(part_payload(branch_requirements=rows), OPERATIONS)
            self.assertEqual(ctx.exception.field, "branch_requirements")

        with self.assertRaises(ValidationError) as ctx:
            self.creator.create_multi_part_request(
                {"set_name": "Brake kit"}, [part_payload(), part_payload(branch_requirements=[])], OPERATIONS
            )
        self.assertEqual(ctx.exception.field, "parts[1].branch_requirements")
        self.assertEqual(self.gateway.requests, {})

    def test_zero_quantity_branches_are_dropped(self):
        rows = [
            {"branch_id": "b-1", "branch_name": "Gangnam", "requested_quantity": 4},
            {"branch_id": "b-2", "branch_name": "Mapo", "requested_quantity": 0},
        ]
        request = self.creator.create_purchase_request(part_payload(branch_requirements=rows), OPERATIONS)

        self.assertEqual([item.branch_id for item in request.branch_requirements], ["b-1"])
        self.assertEqual(request.total_requested_quantity, 4)
        confirmed = self.confirm_single_branch(request.id, 4)
        self.assertEqual(confirmed.current_status, RequestStatus.BRANCH_RECEIVED_CONFIRMED)


class DjangoGatewayTests(WorkflowHarness, TestCase):
    def setUp(self):
        self.make_workflow(DjangoPersistenceGateway())

    def test_history_rows_are_numbered_in_order(self):
        request_pk = self.create()
        self.receive(request_pk)

        sequences = list(
            orm.StatusHistoryEntry.objects.filter(request_id=request_pk).values_list("sequence", "status")
        )
        self.assertEqual(
            sequences,
            [(1, "operations_submitted"), (2, "po_completed"), (3, "warehouse_received")],
        )
        self.assertEqual(orm.PurchaseRequest.objects.get(pk=request_pk).version, 3)

    def test_dispatch_ledger_round_trips_through_storage(self):
        request_pk = self.create()
        self.receive(request_pk)
        self.machine.execute(
            request_pk, Transition.DISPATCH_TO_BRANCHES, dispatch_rows(("b-1", 60, True), ("b-2", 50, False)), LOGISTICS
        )

        request = self.gateway.get(request_pk)

        self.assertEqual(request.current_status, RequestStatus.PARTIAL_DISPATCHED)
        self.assertEqual(request.ledger[0].dispatched_at, self.clock.now())
        self.assertEqual(request.ledger[0].dispatched_by_uid, "log-1")
        self.assertFalse(request.ledger[1].is_dispatched)
        self.assertEqual(request.dispatch.remaining_quantity, 40)

    def test_batch_with_stale_status_writes_nothing(self):
        first, second = self.create(), self.create()
        requests = self.gateway.get_many([first, second])
        updates = [
            self.machine.apply(request, Transition.COMPLETE_PURCHASE_ORDER, PO_DATA, LOGISTICS).to_update(request)
            for request in requests
        ]
        self.machine.execute(second, Transition.REGISTER_ECOUNT, ITEM_GROUPS, LOGISTICS)

        with self.assertRaises(StateMismatch):
            self.gateway.batch_update(updates)

        stored = orm.PurchaseRequest.objects.get(pk=first)
        self.assertEqual(stored.current_status, RequestStatus.OPERATIONS_SUBMITTED)
        self.assertEqual(stored.history.count(), 1)

    def test_set_insert_and_refresh_command(self):
        parts = [
            part_payload(
                part_number=f"P-{index}",
                branch_requirements=[{"branch_id": "b-1", "branch_name": "Gangnam", "requested_quantity": 2}],
            )
            for index in range(2)
        ]
        set_record, members = self.creator.create_multi_part_request({"set_name": "Wiper kit"}, parts, OPERATIONS)
        self.confirm_single_branch(members[0].id, 2)

        out = StringIO()
        call_command("refresh_set_progress", set_id=set_record.set_id, stdout=out)

        stored = orm.MultiPartRequest.objects.get(set_id=set_record.set_id)
        self.assertEqual(stored.completed_parts_count, 1)
        self.assertEqual(stored.overall_status, SetStatus.PARTIAL_COMPLETE)
        self.assertIn("1/2 parts complete", out.getvalue())

    def test_missing_request_is_not_found(self):
        with self.assertRaises(RequestNotFound):
            self.gateway.get("not-a-uuid")


class ProcurementApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.gangnam = Branch.objects.create(code="GN", name="Gangnam")
        self.mapo = Branch.objects.create(code="MP", name="Mapo")
        self.operator = self.user_model.objects.create_user(
            username="ops-user", password="pass1234", role="operations", branch=self.gangnam
        )
        self.logistics = self.user_model.objects.create_user(username="log-user", password="pass1234", role="logistics")

    def part(self, **overrides):
        payload = {
            "part_number": "BP-100",
            "part_name": "Brake pad",
            "initial_supplier": "Acme Parts",
            "branch_requirements": [
                {"branch_id": str(self.gangnam.id), "requested_quantity": 3},
                {"branch_id": str(self.mapo.id), "requested_quantity": 2},
            ],
        }
        payload.update(overrides)
        return payload

    def create_request(self, **overrides):
        self.client.force_authenticate(user=self.operator)
        response = self.client.post("/api/v1/purchase-requests/", self.part(**overrides), format="json")
        self.assertEqual(response.status_code, 201)
        return response.json()["id"]

    def transition(self, request_pk, name, data):
        return self.client.post(f"/api/v1/purchase-requests/{request_pk}/transitions/{name}/", data, format="json")

    def test_create_request_fills_branch_names_and_publishes(self):
        self.client.force_authenticate(user=self.operator)

        response = self.client.post("/api/v1/purchase-requests/", self.part(), format="json")

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["current_status"], "operations_submitted")
        self.assertEqual(body["total_requested_quantity"], 5)
        self.assertEqual(body["branch_requirements"][0]["branch_name"], "Gangnam")
        self.assertTrue(body["request_id"].startswith("REQ-"))
        self.assertTrue(AuditLog.objects.filter(action="purchase_request.create", entity_id=body["id"]).exists())
        event = OutboxEvent.objects.get(entity_id=body["id"])
        self.assertEqual(event.topic, "logistics")
        self.assertEqual(event.payload["payload"]["history_entry"]["status"], "operations_submitted")

    def test_create_rejects_unknown_branch(self):
        self.client.force_authenticate(user=self.operator)
        part = self.part(branch_requirements=[{"branch_id": "00000000-0000-0000-0000-000000000000", "requested_quantity": 1}])

        response = self.client.post("/api/v1/purchase-requests/", part, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_create_requires_a_branch_quantity(self):
        self.client.force_authenticate(user=self.operator)

        for rows in ([], [{"branch_id": str(self.gangnam.id), "requested_quantity": 0}]):
            response = self.client.post("/api/v1/purchase-requests/", self.part(branch_requirements=rows), format="json")
            self.assertEqual(response.status_code, 400)
            self.assertIn("branch_requirements", response.json()["errors"])

        mixed = [
            {"branch_id": str(self.gangnam.id), "requested_quantity": 3},
            {"branch_id": str(self.mapo.id), "requested_quantity": 0},
        ]
        response = self.client.post("/api/v1/purchase-requests/", self.part(branch_requirements=mixed), format="json")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(len(response.json()["branch_requirements"]), 1)
        self.assertEqual(orm.PurchaseRequest.objects.count(), 1)

    def test_bulk_preview_rejects_malformed_dispatch_rows(self):
        request_pk = self.create_request()
        self.client.force_authenticate(user=self.logistics)
        self.transition(request_pk, "complete_purchase_order", {"expected_delivery_date": "2024-05-01", "expected_delivery_quantity": 5})
        self.transition(request_pk, "receive_at_warehouse", {"actual_receipt_date": "2024-05-02", "actual_received_quantity": 5})

        broadcast = self.client.post(
            "/api/v1/purchase-requests/bulk-preview/",
            {
                "request_ids": [request_pk],
                "values": {"branch_dispatch_quantities": [{"branch_id": str(self.gangnam.id), "dispatched_quantity": 3}]},
            },
            format="json",
        )
        self.assertEqual(broadcast.status_code, 422)
        self.assertEqual(broadcast.json()["code"], "validation_error")

        override = self.client.post(
            "/api/v1/purchase-requests/bulk-preview/",
            {"request_ids": [request_pk], "overrides": {request_pk: {"branch_dispatch_quantities": [str(self.gangnam.id)]}}},
            format="json",
        )
        self.assertEqual(override.status_code, 400)
        self.assertEqual(override.json()["code"], "validation_error")

        preview = self.client.post(
            "/api/v1/purchase-requests/bulk-preview/",
            {"request_ids": [request_pk], "branch_toggles": {"Gangnam": True}},
            format="json",
        )
        self.assertEqual(preview.status_code, 200)
        self.assertEqual(
            preview.json()["branches"],
            [{"branch_name": "Gangnam", "fully_dispatched": True}, {"branch_name": "Mapo", "fully_dispatched": False}],
        )

    def test_logistics_cannot_create_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.logistics)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/purchase-requests/", self.part(), format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_transition_moves_request_and_emits_event(self):
        request_pk = self.create_request()
        self.client.force_authenticate(user=self.logistics)

        response = self.transition(
            request_pk,
            "complete_purchase_order",
            {"expected_delivery_date": "2024-05-01", "expected_delivery_quantity": 5},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["current_status"], "po_completed")
        self.assertEqual(response.json()["purchase_order"]["actual_supplier"], "Acme Parts")
        self.assertTrue(OutboxEvent.objects.filter(entity_id=request_pk, op="transition").exists())
        audit = AuditLog.objects.get(action="purchase_request.transition", entity_id=request_pk)
        self.assertEqual(audit.before_snapshot["current_status"], "operations_submitted")

    def test_operations_cannot_run_logistics_transition(self):
        request_pk = self.create_request()

        response = self.transition(
            request_pk,
            "complete_purchase_order",
            {"expected_delivery_date": "2024-05-01", "expected_delivery_quantity": 5},
        )

        self.assertEqual(response.status_code, 403)

    def test_workflow_errors_use_error_envelope(self):
        request_pk = self.create_request()
        self.client.force_authenticate(user=self.logistics)

        mismatch = self.transition(
            request_pk, "receive_at_warehouse", {"actual_receipt_date": "2024-05-01", "actual_received_quantity": 5}
        )
        self.assertEqual(mismatch.status_code, 409)
        self.assertEqual(mismatch.json()["code"], "state_mismatch")
        self.assertEqual(mismatch.json()["errors"]["actual"], "operations_submitted")

        invalid = self.transition(request_pk, "complete_purchase_order", {"expected_delivery_quantity": 5})
        self.assertEqual(invalid.status_code, 422)
        self.assertEqual(invalid.json()["code"], "validation_error")
        self.assertEqual(invalid.json()["errors"]["field"], "expected_delivery_date")

        unknown = self.transition(request_pk, "fly_away", {})
        self.assertEqual(unknown.status_code, 422)

        missing = self.client.get("/api/v1/purchase-requests/00000000-0000-0000-0000-000000000000/")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["code"], "not_found")

    def test_history_can_be_listed_newest_first(self):
        request_pk = self.create_request()
        self.client.force_authenticate(user=self.logistics)
        self.transition(request_pk, "register_ecount", {"item_group1": "A", "item_group2": "B", "item_group3": "C"})

        response = self.client.get(f"/api/v1/purchase-requests/{request_pk}/history/?order=desc")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([entry["status"] for entry in response.json()], ["ecount_registered", "operations_submitted"])

    def test_list_filters_by_status(self):
        first = self.create_request()
        self.create_request()
        self.client.force_authenticate(user=self.logistics)
        self.transition(first, "register_ecount", {"item_group1": "A", "item_group2": "B", "item_group3": "C"})

        response = self.client.get("/api/v1/purchase-requests/?status=ecount_registered")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["id"] for item in response.json()["results"]], [first])

    def test_batch_create_returns_every_request(self):
        self.client.force_authenticate(user=self.operator)

        response = self.client.post(
            "/api/v1/purchase-requests/batch/", {"parts": [self.part(), self.part(part_name="Rotor")]}, format="json"
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(len(response.json()["part_request_ids"]), 2)
        self.assertEqual(orm.PurchaseRequest.objects.count(), 2)

    def test_bulk_process_commits_every_request(self):
        request_pks = [self.create_request(), self.create_request()]
        self.client.force_authenticate(user=self.logistics)

        preview = self.client.post(
            "/api/v1/purchase-requests/bulk-preview/",
            {"request_ids": request_pks, "values": {"expected_delivery_date": "2024-05-01"}},
            format="json",
        )
        self.assertEqual(preview.status_code, 200)
        self.assertEqual(preview.json()["transition"], "complete_purchase_order")
        self.assertEqual(preview.json()["items"][0]["values"]["expected_delivery_quantity"], 5)

        response = self.client.post(
            "/api/v1/purchase-requests/bulk-process/",
            {"request_ids": request_pks, "values": {"expected_delivery_date": "2024-05-01"}},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["processed"], request_pks)
        statuses = set(orm.PurchaseRequest.objects.values_list("current_status", flat=True))
        self.assertEqual(statuses, {"po_completed"})
        self.assertEqual(OutboxEvent.objects.filter(op="transition").count(), 2)

    def test_bulk_process_rejects_mixed_statuses(self):
        request_pks = [self.create_request(), self.create_request()]
        self.client.force_authenticate(user=self.logistics)
        self.transition(request_pks[0], "register_ecount", {"item_group1": "A", "item_group2": "B", "item_group3": "C"})

        response = self.client.post(
            "/api/v1/purchase-requests/bulk-process/", {"request_ids": request_pks}, format="json"
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "mixed_state")

    def test_set_creation_and_progress(self):
        self.client.force_authenticate(user=self.operator)

        response = self.client.post(
            "/api/v1/multi-part-requests/",
            {
                "set_name": "Front axle kit",
                "importance": "urgent",
                "parts": [self.part(part_number=f"P-{index}") for index in range(3)],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        set_id = body["set"]["set_id"]
        self.assertEqual(body["set"]["total_parts_count"], 3)
        self.assertEqual([part["part_order_in_set"] for part in body["parts"]], [1, 2, 3])
        self.assertTrue(OutboxEvent.objects.filter(topic="sets", op="create").exists())

        progress = self.client.get(f"/api/v1/multi-part-requests/{set_id}/progress/")
        self.assertEqual(progress.status_code, 200)
        self.assertEqual(progress.json()["total_parts"], 3)
        self.assertEqual(progress.json()["progress_percentage"], 0.0)

        detail = self.client.get(f"/api/v1/multi-part-requests/{set_id}/")
        self.assertEqual(len(detail.json()["parts"]), 3)

        refresh = self.client.post(f"/api/v1/multi-part-requests/{set_id}/refresh/")
        self.assertEqual(refresh.status_code, 403)
