import logging
from datetime import date, datetime, time

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, IntegrityError, OperationalError, connection, transaction
from django.db.models import Count, F, Sum
from django.utils import timezone

from common.exceptions import (
    ConflictError,
    InactiveEntityError,
    InfrastructureError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ResourceBusyError,
    ValidationFailedError,
)
from core.services import resolve_user
from inventory.models import Movement, Product, Warehouse

logger = logging.getLogger(__name__)

# SQLSTATE raised by PostgreSQL when lock_timeout expires.
LOCK_NOT_AVAILABLE = "55P03"
DEFAULT_LOCK_TIMEOUT_MS = 5000
MAX_RECENT_MOVEMENTS = 100

OUTGOING_TYPES = frozenset({Movement.Type.SALIDA, Movement.Type.TRANSFERENCIA})


def _validate_choice(value, choices, field):
    if value not in choices.values:
        raise ValidationFailedError(
            f"Invalid {field} '{value}'.",
            details={field: f"Must be one of: {', '.join(choices.values)}."},
        )
    return choices(value)


def _validate_quantity(quantity, field="quantity"):
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationFailedError(details={field: "Quantity must be an integer."})
    if quantity <= 0:
        raise ValidationFailedError(details={field: "Quantity must be greater than zero."})
    return quantity


def _validate_length(value, max_length, field):
    value = (value or "").strip()
    if len(value) > max_length:
        raise ValidationFailedError(details={field: f"Ensure this field has no more than {max_length} characters."})
    return value


def _resolve_warehouse(warehouse_id, field):
    try:
        warehouse = Warehouse.objects.get(pk=warehouse_id)
    except (Warehouse.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("warehouse", warehouse_id)
    if not warehouse.is_active:
        raise InactiveEntityError("warehouse", warehouse.pk, f"The {field.replace('_', ' ')} is inactive.")
    return warehouse


def _resolve_transfer_warehouses(movement_type, origin_warehouse_id, destination_warehouse_id):
    if movement_type != Movement.Type.TRANSFERENCIA:
        return None, None

    errors = {}
    if not origin_warehouse_id:
        errors["origin_warehouse"] = "Origin warehouse is required for transfers."
    if not destination_warehouse_id:
        errors["destination_warehouse"] = "Destination warehouse is required for transfers."
    if errors:
        raise ValidationFailedError(details=errors)
    if str(origin_warehouse_id) == str(destination_warehouse_id):
        raise ValidationFailedError(
            "Origin and destination warehouses must be different.",
            details={"destination_warehouse": "Must differ from the origin warehouse."},
        )

    origin = _resolve_warehouse(origin_warehouse_id, "origin_warehouse")
    destination = _resolve_warehouse(destination_warehouse_id, "destination_warehouse")
    return origin, destination


def _set_lock_timeout():
    if connection.vendor != "postgresql":
        return
    timeout_ms = int(getattr(settings, "STOCK_LOCK_TIMEOUT_MS", DEFAULT_LOCK_TIMEOUT_MS))
    with connection.cursor() as cursor:
        cursor.execute("SELECT set_config('lock_timeout', %s, true)", [f"{timeout_ms}ms"])


def _lock_product(product_id):
    """Row-lock the product for the rest of the enclosing transaction."""
    _set_lock_timeout()
    try:
        return Product.objects.select_for_update().get(pk=product_id)
    except (Product.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("product", product_id)


def _is_lock_timeout(exc):
    cause = exc.__cause__
    sqlstate = getattr(cause, "sqlstate", None) or getattr(cause, "pgcode", None)
    if sqlstate == LOCK_NOT_AVAILABLE:
        return True
    return "database is locked" in str(exc).lower()


def record_movement(
    movement_type,
    product_id,
    quantity,
    responsible_id,
    motive,
    origin_warehouse_id=None,
    destination_warehouse_id=None,
    notes="",
    reference_document="",
    occurred_at=None,
):
    """Append a movement to the product's ledger and apply it to the product's stock.

    The product row is locked for the duration of the write and the stock
    update is conditioned on the version read under that lock, so two writers
    on one product are serialized and neither can observe a stale balance.
    The stock update and the movement insert commit together or not at all.
    """
    movement_type = _validate_choice(movement_type, Movement.Type, "type")
    motive = _validate_choice(motive, Movement.Motive, "motive")
    quantity = _validate_quantity(quantity)
    notes = _validate_length(notes, 500, "notes")
    reference_document = _validate_length(reference_document, 100, "reference_document")
    origin, destination = _resolve_transfer_warehouses(movement_type, origin_warehouse_id, destination_warehouse_id)
    responsible = resolve_user(responsible_id, entity="responsible")

    try:
        with transaction.atomic():
            product = _lock_product(product_id)
            if not product.is_active:
                raise InactiveEntityError("product", product.pk)

            stock_before = product.stock
            if movement_type in OUTGOING_TYPES:
                if stock_before < quantity:
                    logger.warning(
                        "movement_rejected_insufficient_stock",
                        extra={
                            "product_id": product.pk,
                            "movement_type": movement_type,
                            "quantity": quantity,
                            "stock_before": stock_before,
                        },
                    )
                    raise InsufficientStockError(stock_before, quantity, product_id=product.pk)
                stock_after = stock_before - quantity
            else:
                stock_after = stock_before + quantity

            version = product.version
            updated = Product.objects.filter(pk=product.pk, version=version).update(
                stock=stock_after,
                version=F("version") + 1,
                updated_at=timezone.now(),
            )
            if updated != 1:
                raise ConflictError(
                    "The product was modified concurrently, retry the movement.",
                    details={"product_id": str(product.pk), "expected_version": version},
                )
            product.stock = stock_after
            product.version = version + 1

            movement = Movement.objects.create(
                type=movement_type,
                product=product,
                quantity=quantity,
                responsible=responsible,
                motive=motive,
                origin_warehouse=origin,
                destination_warehouse=destination,
                stock_before=stock_before,
                stock_after=stock_after,
                sequence=version + 1,
                notes=notes,
                reference_document=reference_document,
                occurred_at=occurred_at or timezone.now(),
            )
    except OperationalError as exc:
        if _is_lock_timeout(exc):
            logger.warning("product_lock_timeout", extra={"product_id": product_id})
            raise ResourceBusyError(
                "The product is being updated by another request, try again.",
                details={"product_id": str(product_id)},
            ) from exc
        raise InfrastructureError() from exc
    except IntegrityError as exc:
        raise ConflictError(
            "The movement conflicts with a concurrent write.",
            details={"product_id": str(product_id)},
        ) from exc
    except DatabaseError as exc:
        raise InfrastructureError() from exc

    logger.info(
        "movement_recorded",
        extra={
            "movement_id": movement.pk,
            "product_id": product.pk,
            "movement_type": movement_type,
            "quantity": quantity,
            "stock_before": stock_before,
            "stock_after": stock_after,
        },
    )
    return movement


def _as_datetime(value, *, end_of_day=False):
    if value is None or isinstance(value, datetime):
        if value is not None and timezone.is_naive(value):
            return timezone.make_aware(value)
        return value
    if isinstance(value, date):
        boundary = time.max if end_of_day else time.min
        return timezone.make_aware(datetime.combine(value, boundary))
    raise ValidationFailedError(details={"date": "Expected a date or datetime."})


def _filter_by_period(queryset, date_from, date_to):
    start = _as_datetime(date_from)
    end = _as_datetime(date_to, end_of_day=True)
    if start and end and start > end:
        raise ValidationFailedError(
            "The start of the period is after its end.",
            details={"date_from": "Must be on or before date_to."},
        )
    if start:
        queryset = queryset.filter(occurred_at__gte=start)
    if end:
        queryset = queryset.filter(occurred_at__lte=end)
    return queryset


def obtain_history(product_id, date_from=None, date_to=None):
    """Return the product's movements, newest ledger position first."""
    try:
        product = Product.objects.get(pk=product_id)
    except (Product.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("product", product_id)

    queryset = Movement.objects.filter(product=product).select_related(
        "responsible", "origin_warehouse", "destination_warehouse"
    )
    return _filter_by_period(queryset, date_from, date_to).order_by("-sequence")


def summarize_by_type(date_from=None, date_to=None):
    queryset = _filter_by_period(Movement.objects.all(), date_from, date_to)
    summary = {movement_type: {"total_quantity": 0, "count": 0} for movement_type in Movement.Type.values}
    for row in queryset.order_by().values("type").annotate(total_quantity=Sum("quantity"), count=Count("id")):
        summary[row["type"]] = {"total_quantity": row["total_quantity"] or 0, "count": row["count"]}
    return summary


def recent_movements(limit=10):
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_RECENT_MOVEMENTS:
        raise ValidationFailedError(details={"limit": f"Must be an integer between 1 and {MAX_RECENT_MOVEMENTS}."})
    return list(
        Movement.objects.select_related("product", "responsible").order_by("-occurred_at", "-created_at")[:limit]
    )


def ensure_product_deletable(product):
    if product.is_active:
        raise InvalidStateError(
            "Deactivate the product before deleting it.",
            details={"product_id": str(product.pk)},
        )
    if product.movements.exists():
        raise ConflictError(
            "Products with recorded movements cannot be deleted.",
            details={"product_id": str(product.pk)},
        )


def resolve_line_items(items, *, check_stock=False):
    """Validate `[{"product", "quantity", "note"?}, ...]` and return `[(product, quantity, note)]`.

    With `check_stock` every product must currently hold at least the
    requested quantity. Nothing is reserved.
    """
    if not items:
        raise ValidationFailedError(details={"items": "At least one item is required."})

    seen = set()
    resolved = []
    for index, item in enumerate(items):
        product_id = item.get("product")
        quantity = _validate_quantity(item.get("quantity"), field=f"items[{index}].quantity")
        if str(product_id) in seen:
            raise ValidationFailedError(details={f"items[{index}].product": "Duplicate product."})
        seen.add(str(product_id))

        try:
            product = Product.objects.get(pk=product_id)
        except (Product.DoesNotExist, DjangoValidationError, ValueError):
            raise NotFoundError("product", product_id)
        if not product.is_active:
            raise InactiveEntityError("product", product.pk)
        if check_stock and product.stock < quantity:
            raise InsufficientStockError(product.stock, quantity, product_id=product.pk)
        resolved.append((product, quantity, str(item.get("note") or "").strip()))
    return resolved
