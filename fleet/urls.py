from rest_framework.routers import DefaultRouter

from fleet.views import VehicleViewSet

router = DefaultRouter()
router.register(r"vehicles", VehicleViewSet, basename="vehicle")

urlpatterns = router.urls
