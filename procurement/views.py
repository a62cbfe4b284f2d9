from django.db import transaction
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, get_user_role
from common.utils import _to_json_compatible, emit_outbox
from procurement import models as orm
from procurement.bulk import BulkTransitionProcessor
from procurement.creation import RequestCreationService
from procurement.domain import Actor, Transition
from procurement.gateway import DjangoPersistenceGateway, request_from_model, set_from_model
from procurement.history import latest, sorted_for_display
from procurement.serializers import (
    BranchDispatchInfoSerializer,
    BulkProcessInputSerializer,
    IndividualPartsInputSerializer,
    MultiPartRequestInputSerializer,
    MultiPartRequestSerializer,
    PartInputSerializer,
    PurchaseRequestSerializer,
    SetProgressSerializer,
    StatusHistoryEntrySerializer,
)
from procurement.sets import SetAggregator
from procurement.state_machine import RequestStateMachine


TRANSITION_CAPABILITIES = {
    Transition.REGISTER_ECOUNT: "procurement.process",
    Transition.UPDATE_CLASSIFICATION: "request.classify",
    Transition.COMPLETE_PURCHASE_ORDER: "procurement.process",
    Transition.RECEIVE_AT_WAREHOUSE: "procurement.process",
    Transition.DISPATCH_TO_BRANCHES: "procurement.process",
    Transition.CONFIRM_BRANCH_RECEIPT: "branch.confirm",
    Transition.REPORT_LOGISTICS_ISSUE: "issue.report",
    Transition.START_ALTERNATIVE_SOURCING: "issue.report",
    Transition.TERMINATE_PROCESS: "process.terminate",
}


def actor_for_user(user):
    return Actor(uid=str(user.id), name=user.display_name, role=get_user_role(user))


def _payload(request):
    data = request.data
    return data.dict() if hasattr(data, "dict") else dict(data or {})


class WorkflowPublishMixin:
    """Audit log plus outbox event for every request a view call changed."""

    gateway_class = DjangoPersistenceGateway

    def get_gateway(self):
        return self.gateway_class()

    def _publish_request(self, record, op, before=None):
        after = PurchaseRequestSerializer(record).data
        create_audit_log_from_request(
            self.request,
            action=f"purchase_request.{op}",
            entity="purchase_request",
            entity_id=record.id,
            before_snapshot=before,
            after_snapshot=after,
        )
        emit_outbox(
            topic=record.current_responsible_team,
            entity="purchase_request",
            entity_id=record.id,
            op=op,
            payload={
                "request_id": record.request_id,
                "part_name": record.part_name,
                "set_id": record.set_id,
                "current_status": record.current_status,
                "current_responsible_team": record.current_responsible_team,
                "history_entry": StatusHistoryEntrySerializer(latest(record.status_history)).data,
            },
        )

    def _refresh_sets(self, gateway, records):
        aggregator = SetAggregator(gateway)
        for set_id in sorted({record.set_id for record in records if record.set_id}):
            aggregator.refresh(set_id)


class PurchaseRequestViewSet(WorkflowPublishMixin, viewsets.GenericViewSet):
    serializer_class = PurchaseRequestSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "request.view",
        "retrieve": "request.view",
        "history": "request.view",
        "transition": "request.view",
        "create": "request.create",
        "batch": "request.create",
        "bulk_preview": "procurement.process",
        "bulk_process": "procurement.process",
    }

    def get_required_capability(self, request):
        if getattr(self, "action", None) != "transition":
            return None
        return TRANSITION_CAPABILITIES.get(self.kwargs.get("transition"))

    def get_queryset(self):
        queryset = orm.PurchaseRequest.objects.prefetch_related("history").order_by("-created_at")
        params = self.request.query_params
        if params.get("status"):
            queryset = queryset.filter(current_status=params["status"])
        if params.get("team"):
            queryset = queryset.filter(current_responsible_team=params["team"])
        if params.get("set_id"):
            queryset = queryset.filter(set_id=params["set_id"])
        if params.get("importance"):
            queryset = queryset.filter(importance=params["importance"])
        return queryset

    def list(self, request):
        page = self.paginate_queryset(self.get_queryset())
        records = [request_from_model(instance) for instance in page]
        return self.get_paginated_response(PurchaseRequestSerializer(records, many=True).data)

    def retrieve(self, request, pk=None):
        return Response(PurchaseRequestSerializer(self.get_gateway().get(pk)).data)

    def create(self, request):
        serializer = PartInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        gateway = self.get_gateway()
        with transaction.atomic():
            record = RequestCreationService(gateway).create_purchase_request(serializer.validated_data, actor_for_user(request.user))
            self._publish_request(record, "create")
        return Response(PurchaseRequestSerializer(record).data, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["post"], url_path="batch")
    def batch(self, request):
        serializer = IndividualPartsInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        gateway = self.get_gateway()
        with transaction.atomic():
            records = RequestCreationService(gateway).create_individual_parts_request(
                serializer.validated_data["parts"], actor_for_user(request.user)
            )
            for record in records:
                self._publish_request(record, "create")
        return Response(
            {
                "part_request_ids": [record.id for record in records],
                "results": PurchaseRequestSerializer(records, many=True).data,
            },
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["get"], url_path="history")
    def history(self, request, pk=None):
        record = self.get_gateway().get(pk)
        newest_first = request.query_params.get("order") == "desc"
        entries = sorted_for_display(record.status_history, newest_first=newest_first)
        return Response(StatusHistoryEntrySerializer(entries, many=True).data)

    @action(detail=True, methods=["post"], url_path=r"transitions/(?P<transition>[a-z_]+)")
    def transition(self, request, pk=None, transition=None):
        gateway = self.get_gateway()
        before = PurchaseRequestSerializer(gateway.get(pk)).data
        with transaction.atomic():
            record = RequestStateMachine(gateway).execute(pk, transition, _payload(request), actor_for_user(request.user))
            self._publish_request(record, "transition", before=before)
            self._refresh_sets(gateway, [record])
        return Response(PurchaseRequestSerializer(record).data)

    def _prepare_bulk(self, processor, validated):
        plan = processor.prepare(validated["request_ids"])
        for name, value in validated["values"].items():
            plan.broadcast(name, value)
        for branch_name, dispatched in validated["branch_toggles"].items():
            plan.set_branch_dispatched(branch_name, dispatched)
        for request_pk, fields in validated["overrides"].items():
            plan.override(request_pk, **fields)
        return plan

    @action(detail=False, methods=["post"], url_path="bulk-preview")
    def bulk_preview(self, request):
        serializer = BulkProcessInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        plan = self._prepare_bulk(BulkTransitionProcessor(self.get_gateway()), serializer.validated_data)

        items = []
        for item in plan.items:
            values = {name: value for name, value in item.data.items() if name != "branch_dispatch_quantities"}
            entry = {
                "id": item.request.id,
                "request_id": item.request.request_id,
                "part_name": item.request.part_name,
                "values": _to_json_compatible(values),
            }
            if "branch_dispatch_quantities" in item.data:
                entry["branch_dispatch_quantities"] = BranchDispatchInfoSerializer(item.data["branch_dispatch_quantities"], many=True).data
            items.append(entry)

        branches = []
        if plan.transition == Transition.DISPATCH_TO_BRANCHES:
            branches = [
                {"branch_name": name, "fully_dispatched": plan.is_branch_fully_dispatched(name)} for name in plan.branch_names
            ]
        return Response({"status": plan.status, "transition": plan.transition, "items": items, "branches": branches})

    @action(detail=False, methods=["post"], url_path="bulk-process")
    def bulk_process(self, request):
        serializer = BulkProcessInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        gateway = self.get_gateway()
        processor = BulkTransitionProcessor(gateway)
        plan = self._prepare_bulk(processor, serializer.validated_data)
        before = {item.request.id: PurchaseRequestSerializer(item.request).data for item in plan.items}

        with transaction.atomic():
            result = processor.commit(plan, actor_for_user(request.user))
            records = gateway.get_many(result.processed)
            for record in records:
                self._publish_request(record, "transition", before=before.get(record.id))
            self._refresh_sets(gateway, records)

        return Response(
            {
                "transition": result.transition,
                "processed": result.processed,
                "statuses": result.target_statuses,
            }
        )


class MultiPartRequestViewSet(WorkflowPublishMixin, viewsets.GenericViewSet):
    serializer_class = MultiPartRequestSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    lookup_field = "set_id"
    lookup_value_regex = "[^/]+"
    permission_action_map = {
        "list": "request.view",
        "retrieve": "request.view",
        "progress": "request.view",
        "create": "request.create",
        "refresh": "set.refresh",
    }

    def get_queryset(self):
        queryset = orm.MultiPartRequest.objects.order_by("-created_at")
        overall_status = self.request.query_params.get("overall_status")
        if overall_status:
            queryset = queryset.filter(overall_status=overall_status)
        return queryset

    def list(self, request):
        page = self.paginate_queryset(self.get_queryset())
        return self.get_paginated_response(MultiPartRequestSerializer([set_from_model(item) for item in page], many=True).data)

    def create(self, request):
        serializer = MultiPartRequestInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        set_data = dict(serializer.validated_data)
        parts = set_data.pop("parts")
        gateway = self.get_gateway()
        with transaction.atomic():
            set_record, members = RequestCreationService(gateway).create_multi_part_request(
                set_data, parts, actor_for_user(request.user)
            )
            for member in members:
                self._publish_request(member, "create")
            set_payload = MultiPartRequestSerializer(set_record).data
            create_audit_log_from_request(
                request,
                action="multi_part_request.create",
                entity="multi_part_request",
                entity_id=set_record.id,
                after_snapshot=set_payload,
            )
            emit_outbox(topic="sets", entity="multi_part_request", entity_id=set_record.id, op="create", payload=set_payload)
        return Response(
            {"set": set_payload, "parts": PurchaseRequestSerializer(members, many=True).data},
            status=status.HTTP_201_CREATED,
        )

    def retrieve(self, request, set_id=None):
        gateway = self.get_gateway()
        set_record = gateway.get_set(set_id)
        members = SetAggregator(gateway).items(set_id)
        return Response(
            {
                "set": MultiPartRequestSerializer(set_record).data,
                "parts": PurchaseRequestSerializer(members, many=True).data,
            }
        )

    @action(detail=True, methods=["get"], url_path="progress")
    def progress(self, request, set_id=None):
        return Response(SetProgressSerializer(SetAggregator(self.get_gateway()).progress(set_id)).data)

    @action(detail=True, methods=["post"], url_path="refresh")
    def refresh(self, request, set_id=None):
        return Response(SetProgressSerializer(SetAggregator(self.get_gateway()).refresh(set_id)).data)
