from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from dataclasses import dataclass
import hashlib
from typing import Optional, List

from dispatch.domain.models import Notification, NotificationType, Order, OrderStatusHistory, Courier, utcnow
from .errors import NotFound, Forbidden
from shared.core import get_logger

logger = get_logger(__name__)

RATE_DELIVERY = "rate_delivery"

# events whose history note names the courier, as "<courier_id>" or "<reason>:<courier_id>"
COURIER_NOTE_EVENTS = {"assign_courier", "decline_assignment", "mark_delivered", "cancel"}

@dataclass(frozen=True)
class Draft:
    user_id: str
    title: str
    body: str
    type: NotificationType
    action: Optional[str] = None

def dedup_key(order_id: str, event: str, user_id: str, seq: int) -> str:
    raw = f"{order_id}|{event}|{user_id}|{seq}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()

def _short(order_id: str) -> str:
    return order_id[:8]

def entry_courier(entry: OrderStatusHistory) -> Optional[str]:
    """Courier named by a history entry, or None when the entry names none."""
    if entry.event not in COURIER_NOTE_EVENTS or not entry.note:
        return None
    return entry.note.split(":", 1)[-1] or None

class NotificationFanout:
    """Turns committed history entries into per-recipient notifications.

    Runs inside the transition's transaction. Each record gets a dedup key
    derived from (order, event, recipient, history seq), so replaying an entry
    never creates a second copy.
    """

    def __init__(self, db: Session):
        self.db = db

    def _courier_user(self, courier_id: Optional[str]) -> Optional[str]:
        if not courier_id:
            return None
        courier = self.db.get(Courier, courier_id)
        return courier.user_id if courier else None

    def drafts_for(self, order: Order, entry: OrderStatusHistory, courier_user_id: Optional[str] = None) -> List[Draft]:
        """Deterministic recipient list for one history entry."""
        ref = _short(order.id)
        patient = order.patient_id
        pharmacist = order.confirmed_by
        courier = courier_user_id
        event = entry.event
        drafts: List[Draft] = []

        if event == "create":
            drafts.append(Draft(patient, "Order received",
                                f"Your order #{ref} was sent to the pharmacy.", NotificationType.ORDER_UPDATE))
        elif event == "confirm":
            drafts.append(Draft(patient, "Order confirmed",
                                f"The pharmacy confirmed your order #{ref}.", NotificationType.ORDER_UPDATE))
        elif event == "mark_preparing":
            drafts.append(Draft(patient, "Order being prepared",
                                f"Your order #{ref} is being prepared. We are looking for a courier.",
                                NotificationType.ORDER_UPDATE))
        elif event == "set_pricing":
            amount = f"{float(order.total_amount):.2f}" if order.total_amount is not None else "-"
            drafts.append(Draft(patient, "Order priced",
                                f"The total for order #{ref} is {amount}.", NotificationType.ORDER_UPDATE))
        elif event == "set_medications":
            drafts.append(Draft(patient, "Order updated",
                                f"The pharmacy updated the medicines in order #{ref}.", NotificationType.ORDER_UPDATE))
        elif event == "assign_courier":
            drafts.append(Draft(patient, "Courier assigned to your order",
                                f"A courier has been assigned to order #{ref}.", NotificationType.DELIVERY))
            if courier:
                body = f"Order #{ref} has been assigned to you. Deliver to: {order.delivery_address}."
                if order.requires_bon:
                    body += " Collect the paper prescription (bon) from the patient."
                drafts.append(Draft(courier, "New delivery assigned", body, NotificationType.DELIVERY))
            if pharmacist:
                drafts.append(Draft(pharmacist, "Courier assigned",
                                    f"A courier is on the way to pick up order #{ref}.",
                                    NotificationType.ORDER_UPDATE))
        elif event == "accept_assignment":
            drafts.append(Draft(patient, "Courier on the way",
                                "Your courier accepted the delivery and is heading to your address.",
                                NotificationType.DELIVERY))
        elif event == "decline_assignment":
            if courier:
                if (entry.note or "").startswith("expired"):
                    drafts.append(Draft(courier, "Assignment expired",
                                        f"Order #{ref} was reassigned because it was not accepted in time.",
                                        NotificationType.DELIVERY))
                else:
                    drafts.append(Draft(courier, "Delivery declined",
                                        f"You declined order #{ref}. It will be offered to another courier.",
                                        NotificationType.DELIVERY))
        elif event == "confirm_arrival":
            drafts.append(Draft(patient, "Courier arrived",
                                "Your courier has arrived. Please confirm you received your order.",
                                NotificationType.DELIVERY))
        elif event == "mark_delivered":
            drafts.append(Draft(patient, "Order delivered",
                                f"Order #{ref} was delivered. How was your courier?",
                                NotificationType.DELIVERY, action=RATE_DELIVERY))
            if courier:
                drafts.append(Draft(courier, "Delivery confirmed",
                                    f"Order #{ref} is complete. Thank you!", NotificationType.DELIVERY))
            if pharmacist:
                drafts.append(Draft(pharmacist, "Order delivered",
                                    f"Order #{ref} reached the patient.", NotificationType.ORDER_UPDATE))
        elif event == "cancel":
            body = f"Order #{ref} was cancelled."
            if order.cancel_reason:
                body += f" Reason: {order.cancel_reason}"
            drafts.append(Draft(patient, "Order cancelled", body, NotificationType.ORDER_UPDATE))
            if courier:
                drafts.append(Draft(courier, "Delivery cancelled", body, NotificationType.ORDER_UPDATE))
            if pharmacist:
                drafts.append(Draft(pharmacist, "Order cancelled", body, NotificationType.ORDER_UPDATE))

        # one record per recipient, first draft wins
        seen = set()
        unique = []
        for draft in drafts:
            if draft.user_id and draft.user_id not in seen:
                seen.add(draft.user_id)
                unique.append(draft)
        return unique

    def fanout(self, order: Order, entry: OrderStatusHistory, courier_id: Optional[str] = None) -> List[Notification]:
        """Persist notifications for ``entry``; returns only newly created rows.

        ``courier_id`` is the courier this entry concerns, never the order's
        current courier: after a decline and reassignment the two differ.
        """
        courier_user_id = self._courier_user(courier_id)
        created = []
        for draft in self.drafts_for(order, entry, courier_user_id):
            key = dedup_key(order.id, entry.event, draft.user_id, entry.seq)
            notification = self._insert_once(key, Notification(
                user_id=draft.user_id,
                title=draft.title,
                body=draft.body,
                type=draft.type.value,
                order_id=order.id,
                action=draft.action,
                dedup_key=key,
                created_at=entry.created_at or utcnow(),
            ))
            if notification is not None:
                created.append(notification)
        return created

    def _insert_once(self, key: str, notification: Notification) -> Optional[Notification]:
        if self.db.scalar(select(Notification.id).where(Notification.dedup_key == key)):
            return None
        try:
            with self.db.begin_nested():
                self.db.add(notification)
        except IntegrityError:
            # a concurrent replay inserted the same key first
            logger.info("Duplicate notification suppressed", extra={'extra_fields': {'dedup_key': key}})
            return None
        return notification

    def replay(self, order: Order, entry: OrderStatusHistory) -> List[Notification]:
        created = self.fanout(order, entry, courier_id=entry_courier(entry))
        self.db.commit()
        return created

    def account_notice(self, user_id: str, title: str, body: str) -> Notification:
        notification = Notification(
            user_id=user_id,
            title=title,
            body=body,
            type=NotificationType.ACCOUNT.value,
        )
        self.db.add(notification)
        self.db.flush()
        return notification

    def list_for_user(self, user_id: str, unread_only: bool = False):
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
        return self.db.scalars(query.order_by(Notification.created_at.desc())).all()

    def mark_read(self, notification_id: str, user_id: str) -> Notification:
        notification = self.db.get(Notification, notification_id)
        if notification is None:
            raise NotFound(f"Notification {notification_id} not found")
        if notification.user_id != user_id:
            raise Forbidden("Notification belongs to another user")
        notification.is_read = True
        self.db.commit()
        self.db.refresh(notification)
        return notification
