from sqlalchemy import select, update, func
from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import Optional

from dispatch.domain.models import Order, OrderStatusHistory, OrderStatus, utcnow
from .errors import NotFound, InvalidTransition

class OrderStore:
    """Sole owner of Order rows and their append-only history.

    Writes go through :meth:`compare_and_set`, a conditional UPDATE keyed on the
    status and version the caller observed, so two handlers racing on one order
    cannot both win.
    """

    def __init__(self, db: Session):
        self.db = db

    def list(self, status: Optional[str] = None, patient_id: Optional[str] = None,
             pharmacy_id: Optional[str] = None, courier_id: Optional[str] = None):
        query = select(Order).order_by(Order.created_at)
        if status:
            query = query.where(Order.status == status)
        if patient_id:
            query = query.where(Order.patient_id == patient_id)
        if pharmacy_id:
            query = query.where(Order.pharmacy_id == pharmacy_id)
        if courier_id:
            query = query.where(Order.delivery_person_id == courier_id)
        return self.db.scalars(query).all()

    def get(self, order_id: str) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def require(self, order_id: str) -> Order:
        order = self.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    def refresh(self, order: Order) -> Order:
        self.db.refresh(order)
        return order

    def add(self, order: Order) -> Order:
        self.db.add(order)
        self.db.flush()
        return order

    def compare_and_set(self, order: Order, expected_status: str, **values) -> Order:
        """Apply ``values`` only if the stored row still matches what we read.

        Raises InvalidTransition carrying the fresh status when another writer
        got there first.
        """
        now = values.pop("updated_at", None) or utcnow()
        # updated_at must move forward even when two writes share a clock tick
        if order.updated_at and now <= order.updated_at:
            now = order.updated_at + timedelta(microseconds=1)
        result = self.db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == expected_status,
                Order.version == order.version,
            )
            .values(version=Order.version + 1, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            fresh = self.get(order.id)
            current = fresh.status if fresh is not None else None
            raise InvalidTransition(
                f"Order {order.id} changed concurrently (expected {expected_status}, found {current})",
                order_id=order.id,
                current_status=current,
            )
        self.db.refresh(order)
        return order

    def next_seq(self, order_id: str) -> int:
        current = self.db.scalar(
            select(func.max(OrderStatusHistory.seq)).where(OrderStatusHistory.order_id == order_id)
        )
        return (current or 0) + 1

    def append_history(self, order_id: str, event: str, from_status: Optional[str], to_status: str,
                       actor_id: str, actor_role: str, note: Optional[str] = None,
                       at: Optional[datetime] = None) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            order_id=order_id,
            seq=self.next_seq(order_id),
            event=event,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            actor_role=actor_role,
            note=note,
            created_at=at or utcnow(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def history(self, order_id: str):
        return self.db.scalars(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.seq)
        ).all()

    def history_entry(self, order_id: str, seq: int) -> Optional[OrderStatusHistory]:
        return self.db.scalar(
            select(OrderStatusHistory).where(
                OrderStatusHistory.order_id == order_id,
                OrderStatusHistory.seq == seq,
            )
        )

    def ids_in_status(self, status: OrderStatus):
        return self.db.scalars(select(Order.id).where(Order.status == status.value)).all()

    def unaccepted_assignments(self, assigned_before: datetime):
        return self.db.scalars(
            select(Order).where(
                Order.status == OrderStatus.IN_TRANSIT.value,
                Order.courier_accepted_at.is_(None),
                Order.assigned_at.is_not(None),
                Order.assigned_at < assigned_before,
            )
        ).all()
