from django.db import transaction

from core.models import SerialCounter


def _highest_existing(model, prefix, field):
    existing = model.objects.filter(**{f"{field}__startswith": prefix}).values_list(field, flat=True)
    serials = [int(value[len(prefix):]) for value in existing if value[len(prefix):].isdigit()]
    return max(serials, default=0)


def next_serial_number(model, prefix, field="number", width=4):
    """Allocate `prefix` followed by the next zero-padded serial.

    The per-prefix counter row stays locked until the caller's transaction
    ends, so concurrent writers for one prefix get distinct numbers. A new
    counter starts after the highest number already stored.
    """
    with transaction.atomic():
        counter, _created = SerialCounter.objects.select_for_update().get_or_create(
            prefix=prefix,
            defaults={"last_value": _highest_existing(model, prefix, field)},
        )
        counter.last_value += 1
        counter.save(update_fields=["last_value"])
    return f"{prefix}{counter.last_value:0{width}d}"
