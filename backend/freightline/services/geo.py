"""Circular geofence containment with GPS-accuracy-aware confidence."""
from __future__ import annotations

from math import atan2, cos, radians, sin, sqrt
from typing import Optional

from freightline.models.geofences import Confidence, ContainmentResult


EARTH_RADIUS_METERS = 6_371_000.0
# Fixes worse than this are too noisy to widen the fence by.
MAX_ADJUSTABLE_ACCURACY = 500.0
ACCURACY_RADIUS_FACTOR = 0.5
HIGH_CONFIDENCE_ACCURACY = 30.0
MEDIUM_CONFIDENCE_ACCURACY = 100.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1, phi2 = radians(lat1), radians(lat2)
    dphi = radians(lat2 - lat1)
    dlambda = radians(lon2 - lon1)

    a = sin(dphi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(dlambda / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def adjusted_radius(base_radius: float, accuracy: Optional[float]) -> float:
    if not accuracy or accuracy > MAX_ADJUSTABLE_ACCURACY:
        return base_radius
    return base_radius + accuracy * ACCURACY_RADIUS_FACTOR


def confidence_for(accuracy: Optional[float]) -> Confidence:
    if accuracy is None:
        return Confidence.MEDIUM
    if accuracy > MEDIUM_CONFIDENCE_ACCURACY:
        return Confidence.LOW
    if accuracy > HIGH_CONFIDENCE_ACCURACY:
        return Confidence.MEDIUM
    return Confidence.HIGH


def check_containment(
    latitude: float,
    longitude: float,
    center_latitude: float,
    center_longitude: float,
    radius: float,
    accuracy: Optional[float] = None,
) -> ContainmentResult:
    distance = haversine_distance(latitude, longitude, center_latitude, center_longitude)
    effective_radius = adjusted_radius(radius, accuracy)
    return ContainmentResult(
        is_within=distance <= effective_radius,
        confidence=confidence_for(accuracy),
        distance=distance,
        adjusted_radius=effective_radius,
        accuracy=accuracy,
    )
