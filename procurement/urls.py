from rest_framework.routers import DefaultRouter

from procurement.views import MultiPartRequestViewSet, PurchaseRequestViewSet

router = DefaultRouter()
router.register(r"purchase-requests", PurchaseRequestViewSet, basename="purchase-request")
router.register(r"multi-part-requests", MultiPartRequestViewSet, basename="multi-part-request")

urlpatterns = router.urls
