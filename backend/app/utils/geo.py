from decimal import ROUND_HALF_UP, Decimal

from geopy.distance import geodesic


def calculate_distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> Decimal:
    """Geodesic distance in km between two coordinate pairs, to 2 decimals."""
    km = geodesic((float(lat1), float(lng1)), (float(lat2), float(lng2))).km
    return Decimal(str(km)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
