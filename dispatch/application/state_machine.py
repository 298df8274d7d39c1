"""Order lifecycle.

    pending -> confirmed -> preparing -> in_transit -> delivered
    any non-terminal -> cancelled (in_transit: admin only)
    in_transit -> preparing when the courier declines before accepting

Every operation runs in one transaction: the conditional order update, the
courier capacity change, the history entry and the notifications commit
together or not at all.
"""
from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import Callable, Optional

from dispatch.domain.models import Order, OrderStatus, TERMINAL_STATUSES, utcnow
from dispatch.infrastructure.prescriptions import PENDING as PRESCRIPTION_PENDING
from .actors import Actor, Role, require_capability
from .assignment import courier_distance_km, estimate_delivery
from .courier_pool import CourierPool, CourierSnapshot
from .errors import DispatchError, InvalidTransition, AssignmentExpired, Forbidden
from .notifications import NotificationFanout
from .order_store import OrderStore
from shared.core import get_logger

logger = get_logger(__name__)

S = OrderStatus

# event -> {from_status: to_status}
TRANSITIONS = {
    "confirm": {S.PENDING: S.CONFIRMED},
    "mark_preparing": {S.CONFIRMED: S.PREPARING},
    "assign_courier": {S.PREPARING: S.IN_TRANSIT},
    "decline_assignment": {S.IN_TRANSIT: S.PREPARING},
    "mark_delivered": {S.IN_TRANSIT: S.DELIVERED},
    "cancel": {
        S.PENDING: S.CANCELLED,
        S.CONFIRMED: S.CANCELLED,
        S.PREPARING: S.CANCELLED,
        S.IN_TRANSIT: S.CANCELLED,
    },
    # recorded in the history without moving the status
    "accept_assignment": {S.IN_TRANSIT: S.IN_TRANSIT},
    "confirm_arrival": {S.IN_TRANSIT: S.IN_TRANSIT},
    "set_pricing": {S.CONFIRMED: S.CONFIRMED, S.PREPARING: S.PREPARING},
    "set_medications": {S.PENDING: S.PENDING, S.CONFIRMED: S.CONFIRMED},
}

def allowed_events(status: str) -> list:
    return sorted(event for event, edges in TRANSITIONS.items() if S(status) in edges)

class OrderStateMachine:
    def __init__(
        self,
        db: Session,
        prescriptions=None,
        acceptance_window_seconds: float = 180.0,
        heartbeat_stale_seconds: float = 120.0,
        courier_speed_kmh: float = 25.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.store = OrderStore(db)
        self.pool = CourierPool(db, heartbeat_stale_seconds=heartbeat_stale_seconds)
        self.fanout = NotificationFanout(db)
        self.prescriptions = prescriptions
        self.acceptance_window = timedelta(seconds=acceptance_window_seconds)
        self.courier_speed_kmh = courier_speed_kmh
        self.clock = clock

    # -- helpers -----------------------------------------------------------

    def _target(self, order: Order, event: str) -> OrderStatus:
        edges = TRANSITIONS[event]
        current = S(order.status)
        if current not in edges:
            if current in TERMINAL_STATUSES:
                message = f"Order is already {current.value}"
            else:
                message = f"Cannot {event.replace('_', ' ')} an order that is {current.value}"
            raise InvalidTransition(message, order_id=order.id, current_status=order.status)
        return edges[current]

    def _apply(self, order: Order, event: str, actor: Actor, note: Optional[str] = None,
               courier_id: Optional[str] = None, **values) -> Order:
        from_status = order.status
        to_status = self._target(order, event)
        now = self.clock()
        self.store.compare_and_set(order, from_status, status=to_status.value, updated_at=now, **values)
        entry = self.store.append_history(
            order.id, event, from_status, to_status.value,
            actor_id=actor.user_id, actor_role=actor.role.value, note=note, at=now,
        )
        self.fanout.fanout(order, entry, courier_id=courier_id)
        self.db.commit()
        logger.info(
            f"Order {event}: {from_status} -> {to_status.value}",
            extra={'extra_fields': {
                'order_id': order.id,
                'event': event,
                'from_status': from_status,
                'to_status': to_status.value,
                'actor_id': actor.user_id,
                'actor_role': actor.role.value,
            }},
        )
        return order

    def _run(self, fn, *args, **kwargs) -> Order:
        try:
            return fn(*args, **kwargs)
        except DispatchError:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error("Order operation failed", exc_info=True)
            raise

    def _courier_of(self, actor: Actor, order: Order) -> str:
        """The courier id behind a courier actor, who must hold ``order``."""
        courier = self.pool.by_user(actor.user_id)
        if courier is None or courier.id != order.delivery_person_id:
            raise Forbidden("Order is assigned to another courier", order_id=order.id, current_status=order.status)
        return courier.id

    # -- operations --------------------------------------------------------

    def get(self, order_id: str) -> Order:
        return self.store.require(order_id)

    def create(self, actor: Actor, patient_id: Optional[str], pharmacy_id: str, delivery_address: str,
               medications: Optional[list] = None, prescription_id: Optional[str] = None,
               delivery_latitude: Optional[float] = None, delivery_longitude: Optional[float] = None,
               delivery_notes: Optional[str] = None) -> Order:
        return self._run(self._create, actor, patient_id, pharmacy_id, delivery_address, medications,
                         prescription_id, delivery_latitude, delivery_longitude, delivery_notes)

    def _create(self, actor, patient_id, pharmacy_id, delivery_address, medications, prescription_id,
                delivery_latitude, delivery_longitude, delivery_notes) -> Order:
        require_capability(actor, "create")
        if actor.role == Role.PATIENT or not patient_id:
            patient_id = actor.user_id
        now = self.clock()
        order = self.store.add(Order(
            patient_id=patient_id,
            pharmacy_id=pharmacy_id,
            prescription_id=prescription_id,
            status=S.PENDING.value,
            medications=list(medications or []),
            delivery_address=delivery_address,
            delivery_latitude=delivery_latitude,
            delivery_longitude=delivery_longitude,
            delivery_notes=delivery_notes,
            created_at=now,
            updated_at=now,
        ))
        entry = self.store.append_history(
            order.id, "create", None, S.PENDING.value,
            actor_id=actor.user_id, actor_role=actor.role.value, at=now,
        )
        self.fanout.fanout(order, entry)
        self.db.commit()
        logger.info(
            "Order created",
            extra={'extra_fields': {'order_id': order.id, 'patient_id': patient_id, 'pharmacy_id': pharmacy_id}},
        )
        return order

    def confirm(self, order_id: str, actor: Actor) -> Order:
        return self._run(self._confirm, order_id, actor)

    def _confirm(self, order_id: str, actor: Actor) -> Order:
        order = self.store.require(order_id)
        require_capability(actor, "confirm", order)
        self._target(order, "confirm")
        if order.prescription_id:
            status = self.prescriptions.get_status(order.prescription_id) if self.prescriptions else None
            if status is None:
                raise InvalidTransition(
                    "Prescription status could not be verified",
                    order_id=order.id, current_status=order.status,
                )
            if status == PRESCRIPTION_PENDING:
                raise InvalidTransition(
                    "Prescription is still pending review",
                    order_id=order.id, current_status=order.status,
                )
        return self._apply(order, "confirm", actor, confirmed_by=actor.user_id)

    def mark_preparing(self, order_id: str, actor: Actor) -> Order:
        return self._run(self._mark_preparing, order_id, actor)

    def _mark_preparing(self, order_id: str, actor: Actor) -> Order:
        order = self.store.require(order_id)
        require_capability(actor, "mark_preparing", order)
        return self._apply(order, "mark_preparing", actor)

    def set_pricing(self, order_id: str, total_amount: float, actor: Actor) -> Order:
        return self._run(self._set_pricing, order_id, total_amount, actor)

    def _set_pricing(self, order_id: str, total_amount: float, actor: Actor) -> Order:
        order = self.store.require(order_id)
        require_capability(actor, "set_pricing", order)
        if total_amount < 0:
            raise InvalidTransition("Total amount cannot be negative", order_id=order.id, current_status=order.status)
        return self._apply(order, "set_pricing", actor, note=f"{total_amount:.2f}", total_amount=total_amount)

    def set_medications(self, order_id: str, medications: list, actor: Actor) -> Order:
        """Replace the medication list while the pharmacy reviews the order.

        When any item carries a unit price, the order total becomes the sum of
        price times quantity.
        """
        return self._run(self._set_medications, order_id, medications, actor)

    def _set_medications(self, order_id: str, medications: list, actor: Actor) -> Order:
        order = self.store.require(order_id)
        require_capability(actor, "set_medications", order)
        if not medications:
            raise InvalidTransition("Medication list cannot be empty", order_id=order.id, current_status=order.status)
        items = [dict(m) for m in medications]
        values = {"medications": items}
        priced = [m for m in items if m.get("price") is not None]
        if priced:
            total = sum(float(m["price"]) * int(m.get("quantity") or 1) for m in priced)
            if total < 0:
                raise InvalidTransition("Total amount cannot be negative", order_id=order.id,
                                        current_status=order.status)
            values["total_amount"] = total
        return self._apply(order, "set_medications", actor, note=f"{len(items)} items", **values)

    def assign_courier(self, order_id: str, courier_id: str, actor: Actor,
                       observed_active_count: Optional[int] = None) -> Order:
        """Bind a preparing order to a courier.

        ``observed_active_count`` is the courier load seen when the courier was
        proposed. If the courier picked up other work or went offline since,
        the reservation fails with CourierUnavailable and nothing is written.
        """
        return self._run(self._assign_courier, order_id, courier_id, actor, observed_active_count)

    def _assign_courier(self, order_id, courier_id, actor, observed_active_count) -> Order:
        order = self.store.require(order_id)
        require_capability(actor, "assign_courier", order)
        # a cancelled order fails here, before any capacity is taken
        self._target(order, "assign_courier")
        courier = CourierSnapshot.of(self.pool.require(courier_id))
        now = self.clock()
        try:
            self.pool.reserve(courier_id, observed_active_count, now=now)
        except DispatchError as e:
            e.order_id = order.id
            e.current_status = order.status
            raise
        distance = courier_distance_km(courier, order.delivery_latitude, order.delivery_longitude)
        return self._apply(
            order, "assign_courier", actor,
            note=courier_id,
            courier_id=courier_id,
            delivery_person_id=courier_id,
            assigned_at=now,
            courier_accepted_at=None,
            courier_arrived_at=None,
            estimated_delivery_at=estimate_delivery(now, distance, self.courier_speed_kmh),
        )

    def accept_assignment(self, order_id: str, actor: Actor) -> Order:
        return self._run(self._accept_assignment, order_id, actor)

    def _accept_assignment(self, order_id: str, actor: Actor) -> Order:
        order = self.store.require(order_id)
        require_capability(actor, "accept_assignment", order)
        self._target(order, "accept_assignment")
        self._courier_of(actor, order)
        if order.courier_accepted_at is not None:
            raise InvalidTransition("Assignment already accepted", order_id=order.id, current_status=order.status)
        now = self.clock()
        if order.assigned_at is not None and now > order.assigned_at + self.acceptance_window:
            raise AssignmentExpired(
                "Acceptance window has closed", order_id=order.id, current_status=order.status,
            )
        return self._apply(order, "accept_assignment", actor, courier_accepted_at=now)

    def decline_assignment(self, order_id: str, actor: Actor, expired: bool = False) -> Order:
        """Hand an unaccepted assignment back to dispatch.

        Returns the order, now ``preparing``; the released courier id is kept
        in the history note.
        """
        return self._run(self._decline_assignment, order_id, actor, expired)

    def _decline_assignment(self, order_id: str, actor: Actor, expired: bool) -> Order:
        order = self.store.require(order_id)
        require_capability(actor, "decline_assignment", order)
        self._target(order, "decline_assignment")
        if actor.role == Role.COURIER:
            courier_id = self._courier_of(actor, order)
        else:
            courier_id = order.delivery_person_id
        if order.courier_accepted_at is not None:
            raise InvalidTransition(
                "Assignment was already accepted; it can only be cancelled by an admin",
                order_id=order.id, current_status=order.status,
            )
        now = self.clock()
        if courier_id:
            self.pool.release(courier_id, now=now)
        reason = "expired" if expired else "declined"
        return self._apply(
            order, "decline_assignment", actor,
            note=f"{reason}:{courier_id}",
            courier_id=courier_id,
            delivery_person_id=None,
            assigned_at=None,
            estimated_delivery_at=None,
        )

    def confirm_arrival(self, order_id: str, actor: Actor) -> Order:
        return self._run(self._confirm_arrival, order_id, actor)

    def _confirm_arrival(self, order_id: str, actor: Actor) -> Order:
        order = self.store.require(order_id)
        require_capability(actor, "confirm_arrival", order)
        self._target(order, "confirm_arrival")
        self._courier_of(actor, order)
        now = self.clock()
        return self._apply(
            order, "confirm_arrival", actor,
            courier_arrived_at=now,
            courier_accepted_at=order.courier_accepted_at or now,
        )

    def mark_delivered(self, order_id: str, courier_id: str, actor: Actor) -> Order:
        return self._run(self._mark_delivered, order_id, courier_id, actor)

    def _mark_delivered(self, order_id: str, courier_id: str, actor: Actor) -> Order:
        order = self.store.require(order_id)
        require_capability(actor, "mark_delivered", order)
        self._target(order, "mark_delivered")
        if courier_id != order.delivery_person_id:
            raise Forbidden("Courier is not assigned to this order", order_id=order.id, current_status=order.status)
        if actor.role == Role.COURIER:
            self._courier_of(actor, order)
        now = self.clock()
        self.pool.release(courier_id, delivered=True, now=now)
        return self._apply(
            order, "mark_delivered", actor,
            note=courier_id,
            courier_id=courier_id,
            delivered_at=now,
            courier_accepted_at=order.courier_accepted_at or now,
        )

    def cancel(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        return self._run(self._cancel, order_id, actor, reason)

    def _cancel(self, order_id: str, actor: Actor, reason: Optional[str]) -> Order:
        order = self.store.require(order_id)
        require_capability(actor, "cancel", order)
        self._target(order, "cancel")
        held = None
        if order.status == S.IN_TRANSIT.value:
            if actor.role != Role.ADMIN:
                raise Forbidden(
                    "Orders in transit can only be cancelled by an admin",
                    order_id=order.id, current_status=order.status,
                )
            held = order.delivery_person_id
        if held:
            self.pool.release(held, now=self.clock())
        return self._apply(order, "cancel", actor, note=held, courier_id=held, cancel_reason=reason)
