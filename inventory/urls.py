from rest_framework.routers import DefaultRouter

from inventory.views import MovementViewSet, ProductViewSet, WarehouseViewSet

router = DefaultRouter()
router.register(r"warehouses", WarehouseViewSet, basename="warehouse")
router.register(r"products", ProductViewSet, basename="product")
router.register(r"movements", MovementViewSet, basename="movement")

urlpatterns = router.urls
