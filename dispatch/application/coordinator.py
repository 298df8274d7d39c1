"""Dispatch orchestration.

The coordinator is the only component that touches several others in one
logical operation. It keeps nothing durable: the retry queue, decline counters
and timeout reports live in memory and are rebuilt from ``preparing`` orders by
the sweep after a restart.
"""
import asyncio
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Optional, List

from cachetools import TTLCache
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from dispatch.core_settings import Settings, get_settings
from dispatch.domain.models import Order, OrderStatus, utcnow
from .actors import Actor, Role, SYSTEM_ACTOR
from .assignment import propose
from .courier_pool import CourierPool
from .notifications import entry_courier
from .errors import NotFound, InvalidTransition, AssignmentExpired, CourierUnavailable, DispatchTimeout, Forbidden
from .order_store import OrderStore
from .state_machine import OrderStateMachine
from shared.core import get_logger

logger = get_logger(__name__)

EPOCH = datetime(1970, 1, 1)

class OrderEvent(str, Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    PRICED = "priced"
    PREPARING = "preparing"
    COURIER_ACCEPTED = "courier_accepted"
    COURIER_DECLINED = "courier_declined"
    COURIER_ARRIVED = "courier_arrived"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

@dataclass
class RetryEntry:
    order_id: str
    attempts: int
    first_queued_at: datetime
    next_attempt_at: datetime
    last_reason: Optional[str] = None
    timeout_reported: bool = False

@dataclass
class DispatchResult:
    order_id: str
    courier_id: Optional[str] = None
    queued: bool = False
    attempts: int = 0
    reason: Optional[str] = None

    @property
    def assigned(self) -> bool:
        return self.courier_id is not None

@dataclass
class SweepReport:
    stale_couriers: List[str] = field(default_factory=list)
    expired_assignments: List[str] = field(default_factory=list)
    recovered: List[str] = field(default_factory=list)
    assigned: List[str] = field(default_factory=list)
    requeued: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    timeouts: List[DispatchTimeout] = field(default_factory=list)

class DispatchCoordinator:
    def __init__(
        self,
        session_factory,
        settings: Optional[Settings] = None,
        prescriptions=None,
        clock: Callable[[], datetime] = utcnow,
        on_timeout: Optional[Callable[[DispatchTimeout], None]] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.prescriptions = prescriptions
        self.clock = clock
        self.on_timeout = on_timeout
        self._lock = threading.Lock()
        self._queue: "OrderedDict[str, RetryEntry]" = OrderedDict()
        self._declines: dict = {}
        self._excluded = TTLCache(
            maxsize=4096,
            ttl=self.settings.DECLINE_EXCLUSION_SECONDS,
            timer=lambda: (self.clock() - EPOCH).total_seconds(),
        )
        self.timeouts: deque = deque(maxlen=self.settings.TIMEOUT_REPORT_LOG_SIZE)

    # -- plumbing ----------------------------------------------------------

    def _machine(self, db) -> OrderStateMachine:
        return OrderStateMachine(
            db,
            prescriptions=self.prescriptions,
            acceptance_window_seconds=self.settings.ACCEPTANCE_WINDOW_SECONDS,
            heartbeat_stale_seconds=self.settings.COURIER_HEARTBEAT_STALE_SECONDS,
            courier_speed_kmh=self.settings.COURIER_SPEED_KMH,
            clock=self.clock,
        )

    def _load(self, order_id: str) -> Order:
        with self.session_factory() as db:
            order = db.scalar(
                select(Order).options(selectinload(Order.history)).where(Order.id == order_id)
            )
            if order is None:
                raise NotFound(f"Order {order_id} not found", order_id=order_id)
            return order

    def _backoff(self, attempts: int) -> timedelta:
        seconds = self.settings.RETRY_BACKOFF_BASE_SECONDS * (2 ** max(attempts - 1, 0))
        return timedelta(seconds=min(seconds, self.settings.RETRY_BACKOFF_MAX_SECONDS))

    def _enqueue(self, order_id: str, reason: Optional[str], first_queued_at: Optional[datetime] = None,
                 immediate: bool = False) -> bool:
        now = self.clock()
        with self._lock:
            entry = self._queue.get(order_id)
            if entry is None:
                if len(self._queue) >= self.settings.RETRY_QUEUE_MAX_SIZE:
                    logger.warning(
                        "Dispatch retry queue full, order left for recovery",
                        extra={'extra_fields': {'order_id': order_id, 'queue_size': len(self._queue)}},
                    )
                    return False
                entry = RetryEntry(order_id=order_id, attempts=0,
                                   first_queued_at=first_queued_at or now, next_attempt_at=now)
                self._queue[order_id] = entry
            if not immediate:
                entry.attempts += 1
                entry.next_attempt_at = now + self._backoff(entry.attempts)
            entry.last_reason = reason
        logger.info(
            "Order queued for dispatch retry",
            extra={'extra_fields': {
                'order_id': order_id,
                'attempts': entry.attempts,
                'next_attempt_at': entry.next_attempt_at,
                'reason': reason,
            }},
        )
        return True

    def _dequeue(self, order_id: str) -> None:
        with self._lock:
            self._queue.pop(order_id, None)

    def _forget(self, order_id: str) -> None:
        """Drop all working state for an order that reached a terminal status."""
        with self._lock:
            self._queue.pop(order_id, None)
            for key in [k for k in self._declines if k[0] == order_id]:
                del self._declines[key]
            self._excluded.expire()
            for key in [k for k in self._excluded.keys() if k[0] == order_id]:
                self._excluded.pop(key, None)

    def _settle(self, order_id: str, status: Optional[str]) -> None:
        if status in (OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value, None):
            self._forget(order_id)
        else:
            self._dequeue(order_id)

    def _excluded_for(self, order_id: str) -> set:
        with self._lock:
            self._excluded.expire()
            return {courier_id for (oid, courier_id) in self._excluded.keys() if oid == order_id}

    def _record_decline(self, order_id: str, courier_id: Optional[str]) -> None:
        if not courier_id:
            return
        with self._lock:
            key = (order_id, courier_id)
            self._declines[key] = self._declines.get(key, 0) + 1
            count = self._declines[key]
            if count >= self.settings.DECLINE_EXCLUSION_THRESHOLD:
                self._excluded[key] = count
        if count >= self.settings.DECLINE_EXCLUSION_THRESHOLD:
            logger.info(
                "Courier temporarily excluded from order",
                extra={'extra_fields': {'order_id': order_id, 'courier_id': courier_id, 'declines': count}},
            )

    def _released_courier(self, order: Order) -> Optional[str]:
        """Courier freed by the latest decline, read from its history note."""
        for entry in reversed(order.history):
            if entry.event == "decline_assignment":
                return entry_courier(entry)
        return None

    # -- dispatch ----------------------------------------------------------

    def dispatch(self, order_id: str, exclude: Iterable[str] = ()) -> DispatchResult:
        """Try to bind a preparing order to a courier right now.

        Lost races (CourierUnavailable) are retried against the next best
        courier up to ASSIGN_IMMEDIATE_RETRIES times; after that, or when no
        courier is free, the order goes to the backoff queue.
        """
        excluded = set(exclude) | self._excluded_for(order_id)
        stale_after = self.settings.COURIER_HEARTBEAT_STALE_SECONDS
        reason = None
        attempts = 0
        while attempts < self.settings.ASSIGN_IMMEDIATE_RETRIES:
            attempts += 1
            now = self.clock()
            with self.session_factory() as db:
                order = OrderStore(db).get(order_id)
                if order is None:
                    raise NotFound(f"Order {order_id} not found", order_id=order_id)
                if order.status != OrderStatus.PREPARING.value:
                    self._settle(order_id, order.status)
                    return DispatchResult(order_id, attempts=attempts, reason=f"order is {order.status}")
                couriers = self._available_couriers(db, now)
                latitude, longitude = order.delivery_latitude, order.delivery_longitude
            candidate = propose(couriers, latitude, longitude, exclude=excluded,
                                now=now, heartbeat_stale_seconds=stale_after)
            if candidate is None:
                reason = "no available courier"
                break
            with self.session_factory() as db:
                try:
                    self._machine(db).assign_courier(
                        order_id, candidate.courier_id, SYSTEM_ACTOR,
                        observed_active_count=candidate.observed_active_count,
                    )
                except CourierUnavailable:
                    logger.info(
                        "Lost courier race, trying next candidate",
                        extra={'extra_fields': {'order_id': order_id, 'courier_id': candidate.courier_id}},
                    )
                    excluded.add(candidate.courier_id)
                    reason = "courier unavailable"
                    continue
                except InvalidTransition as e:
                    if e.current_status == OrderStatus.PREPARING.value:
                        # another writer bumped the version; order still waiting
                        reason = "order changed concurrently"
                        continue
                    self._settle(order_id, e.current_status)
                    return DispatchResult(order_id, attempts=attempts, reason=e.message)
            self._dequeue(order_id)
            logger.info(
                "Courier assigned",
                extra={'extra_fields': {
                    'order_id': order_id,
                    'courier_id': candidate.courier_id,
                    'score': round(candidate.score, 3),
                    'attempts': attempts,
                }},
            )
            return DispatchResult(order_id, courier_id=candidate.courier_id, attempts=attempts)
        queued = self._enqueue(order_id, reason)
        return DispatchResult(order_id, queued=queued, attempts=attempts, reason=reason)

    def _available_couriers(self, db, now: datetime):
        return CourierPool(db, self.settings.COURIER_HEARTBEAT_STALE_SECONDS).available(now)

    # -- commands ----------------------------------------------------------

    def create_order(self, actor: Actor, **data) -> Order:
        with self.session_factory() as db:
            order = self._machine(db).create(actor, **data)
            order_id = order.id
        return self._load(order_id)

    def confirm(self, order_id: str, actor: Actor) -> Order:
        with self.session_factory() as db:
            self._machine(db).confirm(order_id, actor)
        return self._load(order_id)

    def set_pricing(self, order_id: str, total_amount: float, actor: Actor) -> Order:
        with self.session_factory() as db:
            self._machine(db).set_pricing(order_id, total_amount, actor)
        return self._load(order_id)

    def set_medications(self, order_id: str, medications: list, actor: Actor) -> Order:
        with self.session_factory() as db:
            self._machine(db).set_medications(order_id, medications, actor)
        return self._load(order_id)

    def assign(self, order_id: str, courier_id: str, actor: Actor) -> Order:
        """Pharmacist or admin picks the courier instead of waiting for dispatch."""
        with self.session_factory() as db:
            self._machine(db).assign_courier(order_id, courier_id, actor)
        self._dequeue(order_id)
        logger.info(
            "Courier assigned by hand",
            extra={'extra_fields': {'order_id': order_id, 'courier_id': courier_id, 'actor_id': actor.user_id}},
        )
        return self._load(order_id)

    def mark_preparing(self, order_id: str, actor: Actor) -> Order:
        with self.session_factory() as db:
            self._machine(db).mark_preparing(order_id, actor)
        self.dispatch(order_id)
        return self._load(order_id)

    def accept(self, order_id: str, actor: Actor) -> Order:
        try:
            with self.session_factory() as db:
                self._machine(db).accept_assignment(order_id, actor)
        except AssignmentExpired as e:
            self._expire(order_id)
            e.current_status = self._load(order_id).status
            raise
        return self._load(order_id)

    def decline(self, order_id: str, actor: Actor) -> Order:
        with self.session_factory() as db:
            self._machine(db).decline_assignment(order_id, actor)
        order = self._load(order_id)
        courier_id = self._released_courier(order)
        self._record_decline(order_id, courier_id)
        self.dispatch(order_id, exclude=[courier_id] if courier_id else [])
        return self._load(order_id)

    def arrive(self, order_id: str, actor: Actor) -> Order:
        with self.session_factory() as db:
            self._machine(db).confirm_arrival(order_id, actor)
        return self._load(order_id)

    def deliver(self, order_id: str, actor: Actor, courier_id: Optional[str] = None) -> Order:
        with self.session_factory() as db:
            machine = self._machine(db)
            if courier_id is None:
                if actor.role == Role.COURIER:
                    courier = machine.pool.by_user(actor.user_id)
                    if courier is None:
                        raise Forbidden("No courier profile for this account", order_id=order_id)
                    courier_id = courier.id
                else:
                    courier_id = machine.get(order_id).delivery_person_id
            machine.mark_delivered(order_id, courier_id, actor)
        self._forget(order_id)
        return self._load(order_id)

    def cancel(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        with self.session_factory() as db:
            self._machine(db).cancel(order_id, actor, reason)
        self._forget(order_id)
        return self._load(order_id)

    def handle(self, event: OrderEvent, order_id: Optional[str], actor: Actor, payload: Optional[dict] = None) -> Order:
        """Single entry point mapping an incoming event to its command."""
        payload = payload or {}
        event = OrderEvent(event)
        if event == OrderEvent.CREATED:
            return self.create_order(actor, **payload)
        if order_id is None:
            raise NotFound("Event needs an order id")
        if event == OrderEvent.CONFIRMED:
            return self.confirm(order_id, actor)
        if event == OrderEvent.PRICED:
            return self.set_pricing(order_id, float(payload["total_amount"]), actor)
        if event == OrderEvent.PREPARING:
            return self.mark_preparing(order_id, actor)
        if event == OrderEvent.COURIER_ACCEPTED:
            return self.accept(order_id, actor)
        if event == OrderEvent.COURIER_DECLINED:
            return self.decline(order_id, actor)
        if event == OrderEvent.COURIER_ARRIVED:
            return self.arrive(order_id, actor)
        if event == OrderEvent.DELIVERED:
            return self.deliver(order_id, actor, payload.get("courier_id"))
        return self.cancel(order_id, actor, payload.get("reason"))

    # -- housekeeping ------------------------------------------------------

    def _expire(self, order_id: str) -> Optional[DispatchResult]:
        with self.session_factory() as db:
            try:
                self._machine(db).decline_assignment(order_id, SYSTEM_ACTOR, expired=True)
            except InvalidTransition:
                # accepted, delivered or cancelled in the meantime
                return None
        order = self._load(order_id)
        courier_id = self._released_courier(order)
        self._record_decline(order_id, courier_id)
        logger.info(
            "Unaccepted assignment expired",
            extra={'extra_fields': {'order_id': order_id, 'courier_id': courier_id}},
        )
        return self.dispatch(order_id, exclude=[courier_id] if courier_id else [])

    def expire_assignments(self, now: Optional[datetime] = None) -> List[str]:
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.settings.ACCEPTANCE_WINDOW_SECONDS)
        with self.session_factory() as db:
            order_ids = [o.id for o in OrderStore(db).unaccepted_assignments(cutoff)]
        expired = []
        for order_id in order_ids:
            if self._expire(order_id) is not None:
                expired.append(order_id)
        return expired

    def _report_timeout(self, entry: RetryEntry, now: datetime) -> DispatchTimeout:
        waited = (now - entry.first_queued_at).total_seconds()
        report = DispatchTimeout(
            f"No courier found for order {entry.order_id} after {waited:.0f}s",
            order_id=entry.order_id,
            current_status=OrderStatus.PREPARING.value,
            waited_seconds=waited,
            attempts=entry.attempts,
        )
        with self._lock:
            entry.timeout_reported = True
            self.timeouts.append(report)
        logger.warning(
            "Dispatch timeout",
            extra={'extra_fields': report.to_dict()},
        )
        if self.on_timeout is not None:
            try:
                self.on_timeout(report)
            except Exception:
                logger.error("Dispatch timeout callback failed", exc_info=True)
        return report

    def sweep(self) -> SweepReport:
        """One housekeeping pass; called periodically, never by request handlers."""
        now = self.clock()
        report = SweepReport()
        with self.session_factory() as db:
            report.stale_couriers = CourierPool(db, self.settings.COURIER_HEARTBEAT_STALE_SECONDS).drop_stale(now)
        report.expired_assignments = self.expire_assignments(now)

        with self.session_factory() as db:
            waiting = [(o.id, o.updated_at) for o in OrderStore(db).list(status=OrderStatus.PREPARING.value)]
        with self._lock:
            missing = [(oid, since) for oid, since in waiting if oid not in self._queue]
        for order_id, since in missing:
            if self._enqueue(order_id, "recovered", first_queued_at=since, immediate=True):
                report.recovered.append(order_id)

        with self._lock:
            due = [e.order_id for e in self._queue.values() if e.next_attempt_at <= now]
        for order_id in due:
            result = self.dispatch(order_id)
            if result.assigned:
                report.assigned.append(order_id)
            elif result.queued:
                report.requeued.append(order_id)
            else:
                report.dropped.append(order_id)

        with self._lock:
            overdue = [
                e for e in self._queue.values()
                if not e.timeout_reported
                and (now - e.first_queued_at).total_seconds() > self.settings.DISPATCH_MAX_WAIT_SECONDS
            ]
        for entry in overdue:
            report.timeouts.append(self._report_timeout(entry, now))

        logger.info(
            "Dispatch sweep finished",
            extra={'extra_fields': {
                'stale_couriers': len(report.stale_couriers),
                'expired': len(report.expired_assignments),
                'recovered': len(report.recovered),
                'assigned': len(report.assigned),
                'requeued': len(report.requeued),
                'timeouts': len(report.timeouts),
            }},
        )
        return report

    async def run_sweeps(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.error("Dispatch sweep failed", exc_info=True)

    # -- introspection -----------------------------------------------------

    def queue_snapshot(self) -> List[dict]:
        with self._lock:
            return [
                {
                    "order_id": e.order_id,
                    "attempts": e.attempts,
                    "first_queued_at": e.first_queued_at,
                    "next_attempt_at": e.next_attempt_at,
                    "last_reason": e.last_reason,
                    "timeout_reported": e.timeout_reported,
                }
                for e in self._queue.values()
            ]

    def queue_depth(self) -> int:
        with self._lock:
            return len(self._queue)

    def is_queued(self, order_id: str) -> bool:
        with self._lock:
            return order_id in self._queue
