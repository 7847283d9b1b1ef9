import math

from common.exceptions import ValidationFailedError

EARTH_RADIUS_KM = 6371.0088

LATITUDE_RANGE = (-90.0, 90.0)
LONGITUDE_RANGE = (-180.0, 180.0)


def _as_float(value, field):
    if isinstance(value, bool):
        raise ValidationFailedError(details={field: "Must be a number."})
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationFailedError(details={field: "Must be a number."})
    if math.isnan(number) or math.isinf(number):
        raise ValidationFailedError(details={field: "Must be a finite number."})
    return number


def validate_coordinates(latitude, longitude, *, prefix=""):
    """Return (lat, lon) as floats or raise ValidationFailedError.

    Bounds are inclusive: latitude in [-90, 90], longitude in [-180, 180].
    """
    lat_field = f"{prefix}latitude"
    lon_field = f"{prefix}longitude"
    errors = {}

    lat = lon = None
    try:
        lat = _as_float(latitude, lat_field)
    except ValidationFailedError as exc:
        errors.update(exc.details)
    try:
        lon = _as_float(longitude, lon_field)
    except ValidationFailedError as exc:
        errors.update(exc.details)

    if lat is not None and not LATITUDE_RANGE[0] <= lat <= LATITUDE_RANGE[1]:
        errors[lat_field] = "Latitude must be between -90 and 90."
    if lon is not None and not LONGITUDE_RANGE[0] <= lon <= LONGITUDE_RANGE[1]:
        errors[lon_field] = "Longitude must be between -180 and 180."

    if errors:
        raise ValidationFailedError(details=errors)
    return lat, lon


def validate_speed(speed, field="speed"):
    if speed in (None, ""):
        return 0.0
    value = _as_float(speed, field)
    if value < 0:
        raise ValidationFailedError(details={field: "Speed cannot be negative."})
    return value


def interpolate(origin, destination, fraction):
    """Linear interpolation between two (lat, lon) pairs; fraction is clamped to [0, 1]."""
    fraction = min(max(fraction, 0.0), 1.0)
    lat = origin[0] + (destination[0] - origin[0]) * fraction
    lon = origin[1] + (destination[1] - origin[1]) * fraction
    return lat, lon


def haversine_km(origin, destination):
    lat1, lon1 = map(math.radians, origin)
    lat2, lon2 = map(math.radians, destination)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def validate_place(place, prefix):
    """Normalize a {name, address, latitude, longitude} mapping for `prefix`."""
    if not isinstance(place, dict):
        raise ValidationFailedError(details={prefix: "Expected an object with name, address, latitude and longitude."})
    errors = {}
    name = str(place.get("name") or "").strip()
    address = str(place.get("address") or "").strip()
    if not name:
        errors[f"{prefix}_name"] = "This field is required."
    if not address:
        errors[f"{prefix}_address"] = "This field is required."
    try:
        latitude, longitude = validate_coordinates(place.get("latitude"), place.get("longitude"), prefix=f"{prefix}_")
    except ValidationFailedError as exc:
        errors.update(exc.details)
    if errors:
        raise ValidationFailedError(details=errors)
    return {"name": name, "address": address, "latitude": latitude, "longitude": longitude}
