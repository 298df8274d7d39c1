from sqlalchemy import select, update
from sqlalchemy.orm import Session
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List

from dispatch.domain.models import Courier, utcnow
from .errors import NotFound, CourierUnavailable
from shared.core import get_logger

logger = get_logger(__name__)

@dataclass(frozen=True)
class CourierSnapshot:
    """Point-in-time view of a courier, detached from the session."""
    id: str
    user_id: str
    latitude: Optional[float]
    longitude: Optional[float]
    rating: float
    active_order_count: int
    max_active_orders: int
    is_available: bool
    last_heartbeat_at: Optional[datetime]

    @classmethod
    def of(cls, courier: Courier) -> "CourierSnapshot":
        return cls(
            id=courier.id,
            user_id=courier.user_id,
            latitude=courier.latitude,
            longitude=courier.longitude,
            rating=float(courier.rating if courier.rating is not None else 0.0),
            active_order_count=courier.active_order_count,
            max_active_orders=courier.max_active_orders,
            is_available=courier.is_available,
            last_heartbeat_at=courier.last_heartbeat_at,
        )

    @property
    def has_capacity(self) -> bool:
        return self.active_order_count < self.max_active_orders

class CourierPool:
    """Courier availability, location and load.

    Capacity changes are single-row conditional UPDATEs so two orders competing
    for the same courier cannot both reserve it.
    """

    def __init__(self, db: Session, heartbeat_stale_seconds: float = 120.0):
        self.db = db
        self.heartbeat_stale_seconds = heartbeat_stale_seconds

    def _fresh_after(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self.heartbeat_stale_seconds)

    def list(self):
        return self.db.scalars(select(Courier).order_by(Courier.id)).all()

    def get(self, courier_id: str) -> Optional[Courier]:
        return self.db.get(Courier, courier_id)

    def require(self, courier_id: str) -> Courier:
        courier = self.get(courier_id)
        if courier is None:
            raise NotFound(f"Courier {courier_id} not found")
        return courier

    def by_user(self, user_id: str) -> Optional[Courier]:
        return self.db.scalar(select(Courier).where(Courier.user_id == user_id))

    def register(self, user_id: str, name: Optional[str] = None, latitude: Optional[float] = None,
                 longitude: Optional[float] = None, rating: float = 5.0, max_active_orders: int = 1,
                 is_available: bool = True, now: Optional[datetime] = None) -> Courier:
        now = now or utcnow()
        courier = Courier(
            user_id=user_id,
            name=name,
            latitude=latitude,
            longitude=longitude,
            rating=rating,
            max_active_orders=max_active_orders,
            is_available=is_available,
            last_heartbeat_at=now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(courier)
        self.db.commit()
        self.db.refresh(courier)
        logger.info(
            "Courier registered",
            extra={'extra_fields': {'courier_id': courier.id, 'user_id': user_id}},
        )
        return courier

    def _write(self, courier_id: str, *conditions, **values) -> bool:
        now = values.pop("now", None) or utcnow()
        result = self.db.execute(
            update(Courier)
            .where(Courier.id == courier_id, *conditions)
            .values(version=Courier.version + 1, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def heartbeat(self, courier_id: str, latitude: Optional[float] = None, longitude: Optional[float] = None,
                  is_available: Optional[bool] = None, now: Optional[datetime] = None) -> Courier:
        """Record a courier's periodic status ping."""
        now = now or utcnow()
        self.require(courier_id)
        values = {"last_heartbeat_at": now}
        if latitude is not None and longitude is not None:
            values["latitude"] = latitude
            values["longitude"] = longitude
        if is_available is not None:
            values["is_available"] = is_available
        self._write(courier_id, now=now, **values)
        self.db.commit()
        courier = self.require(courier_id)
        self.db.refresh(courier)
        return courier

    def set_availability(self, courier_id: str, is_available: bool, now: Optional[datetime] = None) -> Courier:
        self.require(courier_id)
        self._write(courier_id, now=now, is_available=is_available)
        courier = self.require(courier_id)
        self.db.refresh(courier)
        return courier

    def available(self, now: Optional[datetime] = None) -> List[CourierSnapshot]:
        """Couriers that may receive a new order right now."""
        now = now or utcnow()
        rows = self.db.scalars(
            select(Courier)
            .where(
                Courier.is_available.is_(True),
                Courier.last_heartbeat_at.is_not(None),
                Courier.last_heartbeat_at >= self._fresh_after(now),
                Courier.active_order_count < Courier.max_active_orders,
            )
            .order_by(Courier.id)
        ).all()
        return [CourierSnapshot.of(c) for c in rows]

    def reserve(self, courier_id: str, observed_active_count: Optional[int] = None,
                now: Optional[datetime] = None) -> None:
        """Take one unit of the courier's capacity inside the caller's transaction.

        ``observed_active_count`` is the load seen when the courier was
        proposed; any change since then loses the race.
        """
        now = now or utcnow()
        courier = self.get(courier_id)
        if courier is None:
            raise NotFound(f"Courier {courier_id} not found")
        expected = courier.active_order_count if observed_active_count is None else observed_active_count
        ok = self._write(
            courier_id,
            Courier.is_available.is_(True),
            Courier.last_heartbeat_at >= self._fresh_after(now),
            Courier.active_order_count == expected,
            Courier.active_order_count < Courier.max_active_orders,
            now=now,
            active_order_count=Courier.active_order_count + 1,
        )
        if not ok:
            raise CourierUnavailable(f"Courier {courier_id} is no longer available", courier_id=courier_id)

    def release(self, courier_id: str, delivered: bool = False, now: Optional[datetime] = None) -> None:
        """Give back one unit of capacity; never drops below zero."""
        values = {"active_order_count": Courier.active_order_count - 1}
        if delivered:
            values["total_deliveries"] = Courier.total_deliveries + 1
        released = self._write(courier_id, Courier.active_order_count > 0, now=now, **values)
        if not released:
            logger.warning(
                "Courier release skipped, no active orders held",
                extra={'extra_fields': {'courier_id': courier_id}},
            )

    def drop_stale(self, now: Optional[datetime] = None) -> List[str]:
        """Mark couriers whose heartbeat went quiet as unavailable."""
        now = now or utcnow()
        stale_ids = self.db.scalars(
            select(Courier.id).where(
                Courier.is_available.is_(True),
                (Courier.last_heartbeat_at.is_(None)) | (Courier.last_heartbeat_at < self._fresh_after(now)),
            )
        ).all()
        dropped = []
        for courier_id in stale_ids:
            # the courier may have pinged between the select and this write
            if self._write(
                courier_id,
                (Courier.last_heartbeat_at.is_(None)) | (Courier.last_heartbeat_at < self._fresh_after(now)),
                now=now,
                is_available=False,
            ):
                dropped.append(courier_id)
        self.db.commit()
        if dropped:
            logger.info(
                "Stale couriers removed from pool",
                extra={'extra_fields': {'courier_ids': dropped}},
            )
        return dropped
