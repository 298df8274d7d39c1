"""Courier selection for orders that are ready for pickup.

Pure functions over :class:`CourierSnapshot` values; nothing here touches the
database, so the ranking is reproducible from its inputs alone.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .courier_pool import CourierSnapshot

EARTH_RADIUS_KM = 6371.0

# Lower score wins.
DISTANCE_WEIGHT = 1.0
RATING_WEIGHT = 0.5
LOAD_WEIGHT = 0.25
MAX_RATING = 5.0
# Used when either side has no coordinates; ranks such couriers last.
UNKNOWN_DISTANCE_KM = 50.0

# Estimated delivery
HANDOVER_MINUTES = 5
UNKNOWN_ETA_MINUTES = 30

@dataclass(frozen=True)
class Candidate:
    courier_id: str
    score: float
    distance_km: Optional[float]
    observed_active_count: int

def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

def courier_distance_km(courier: CourierSnapshot, latitude: Optional[float],
                        longitude: Optional[float]) -> Optional[float]:
    if None in (courier.latitude, courier.longitude, latitude, longitude):
        return None
    return haversine_km(courier.latitude, courier.longitude, latitude, longitude)

def score(distance_km: Optional[float], rating: float, active_order_count: int) -> float:
    distance = UNKNOWN_DISTANCE_KM if distance_km is None else distance_km
    rating = min(max(rating, 0.0), MAX_RATING)
    return (
        DISTANCE_WEIGHT * distance
        + RATING_WEIGHT * (MAX_RATING - rating)
        + LOAD_WEIGHT * active_order_count
    )

def rank(couriers: Iterable[CourierSnapshot], latitude: Optional[float], longitude: Optional[float],
         exclude: Iterable[str] = (), now: Optional[datetime] = None,
         heartbeat_stale_seconds: Optional[float] = None) -> list:
    """All eligible couriers as candidates, best first.

    Unavailable, full, excluded or (when ``now`` is given) stale couriers are
    dropped even if the caller's snapshot still lists them.
    """
    excluded = set(exclude)
    candidates = []
    for courier in couriers:
        if not courier.is_available or not courier.has_capacity or courier.id in excluded:
            continue
        if now is not None and heartbeat_stale_seconds is not None:
            if courier.last_heartbeat_at is None:
                continue
            if courier.last_heartbeat_at < now - timedelta(seconds=heartbeat_stale_seconds):
                continue
        distance = courier_distance_km(courier, latitude, longitude)
        candidates.append(Candidate(
            courier_id=courier.id,
            score=score(distance, courier.rating, courier.active_order_count),
            distance_km=distance,
            observed_active_count=courier.active_order_count,
        ))
    candidates.sort(key=lambda c: (round(c.score, 9), c.courier_id))
    return candidates

def propose(couriers: Iterable[CourierSnapshot], latitude: Optional[float], longitude: Optional[float],
            exclude: Iterable[str] = (), now: Optional[datetime] = None,
            heartbeat_stale_seconds: Optional[float] = None) -> Optional[Candidate]:
    """Best courier for a delivery point, or None when nobody is free."""
    ranked = rank(couriers, latitude, longitude, exclude, now, heartbeat_stale_seconds)
    return ranked[0] if ranked else None

def estimate_delivery(now: datetime, distance_km: Optional[float], speed_kmh: float) -> datetime:
    if distance_km is None or speed_kmh <= 0:
        return now + timedelta(minutes=UNKNOWN_ETA_MINUTES)
    return now + timedelta(minutes=HANDOVER_MINUTES + distance_km / speed_kmh * 60)
