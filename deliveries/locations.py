import random

from django.conf import settings
from django.utils.module_loading import import_string

DEFAULT_LOCATION_LOOKUP = "deliveries.locations.StaticLocationLookup"

BOGOTA_AREA_LABELS = (
    "Avenida Boyacá con Calle 80",
    "Autopista Norte, Calle 170",
    "Avenida Las Américas, Kennedy",
    "Calle 26, Salitre",
    "Avenida Caracas con Calle 45",
    "Carrera 7, Chapinero",
    "Avenida 68, Puente Aranda",
    "Calle 13, Zona Industrial Montevideo",
    "Avenida Ciudad de Cali, Fontibón",
    "NQS con Calle 63",
    "Avenida Suba, Niza",
    "Calle 100 con Carrera 15",
    "Autopista Sur, Bosa",
    "Avenida Primero de Mayo, Tunjuelito",
    "Vía Siberia, Cota",
)


class StaticLocationLookup:
    """Pick a human-readable place name from a fixed list."""

    def __init__(self, labels=BOGOTA_AREA_LABELS, rng=None):
        if not labels:
            raise ValueError("StaticLocationLookup needs at least one label.")
        self.labels = tuple(labels)
        self.rng = rng or random.Random()

    def random_label(self):
        return self.rng.choice(self.labels)


def get_location_lookup():
    path = getattr(settings, "DELIVERY_LOCATION_LOOKUP", DEFAULT_LOCATION_LOOKUP)
    return import_string(path)()
