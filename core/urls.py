from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import AuditLogViewSet, BranchViewSet, OutboxPullView, healthz, readyz

router = DefaultRouter()
router.register(r"branches", BranchViewSet, basename="branch")
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls + [
    path("outbox/pull/", OutboxPullView.as_view(), name="outbox_pull"),
    path("healthz/", healthz, name="healthz"),
    path("readyz/", readyz, name="readyz"),
]
