import logging

from django.db import connections
from django.utils.dateparse import parse_datetime
from rest_framework import status, viewsets
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView
from rest_framework_simplejwt.views import TokenObtainPairView

from common.permissions import RoleCapabilityPermission
from core.models import AuditLog, Branch, OutboxEvent
from core.serializers import (
    AuditLogSerializer,
    BranchSerializer,
    EmailOrUsernameTokenObtainPairSerializer,
    OutboxPullSerializer,
)

logger = logging.getLogger(__name__)


class EmailOrUsernameTokenObtainPairView(TokenObtainPairView):
    serializer_class = EmailOrUsernameTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class BranchViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Branch.objects.filter(is_active=True).order_by("name")
    serializer_class = BranchSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "request.view", "retrieve": "request.view"}


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AuditLog.objects.select_related("actor", "branch")
    serializer_class = AuditLogSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "audit.view", "retrieve": "audit.view"}

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")
        params = self.request.query_params

        start_date = parse_datetime(params.get("start_date", ""))
        end_date = parse_datetime(params.get("end_date", ""))
        if start_date:
            qs = qs.filter(created_at__gte=start_date)
        if end_date:
            qs = qs.filter(created_at__lte=end_date)
        for field in ("action", "entity", "entity_id", "actor_id"):
            if params.get(field):
                qs = qs.filter(**{field: params[field]})
        return qs


class OutboxPullView(APIView):
    """Cursor-based feed of workflow events, oldest first."""

    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "outbox.pull"}

    def post(self, request):
        serializer = OutboxPullSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        cursor = serializer.validated_data["cursor"]
        limit = serializer.validated_data["limit"]
        topic = serializer.validated_data.get("topic")

        updates_qs = OutboxEvent.objects.filter(id__gt=cursor).order_by("id")
        if topic:
            updates_qs = updates_qs.filter(topic=topic)
        updates = list(updates_qs[: limit + 1])
        has_more = len(updates) > limit
        updates = updates[:limit]
        server_cursor = updates[-1].id if updates else cursor

        return Response(
            {
                "server_cursor": server_cursor,
                "updates": [
                    {
                        "cursor": update.id,
                        "topic": update.topic,
                        "entity": update.entity,
                        "op": update.op,
                        "entity_id": str(update.entity_id),
                        "payload": update.payload,
                        "created_at": update.created_at,
                    }
                    for update in updates
                ],
                "has_more": has_more,
            }
        )


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except Exception as exc:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None), "detail": str(exc)},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
