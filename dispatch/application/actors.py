from dataclasses import dataclass
from enum import Enum
from typing import Optional

from dispatch.domain.models import Order
from .errors import Forbidden

class Role(str, Enum):
    PATIENT = "patient"
    PHARMACIST = "pharmacist"
    COURIER = "courier"
    ADMIN = "admin"
    # the coordinator acting on its own behalf
    SYSTEM = "system"

@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role
    is_suspended: bool = False
    pharmacy_id: Optional[str] = None

SYSTEM_ACTOR = Actor(user_id="dispatch-coordinator", role=Role.SYSTEM)

# operation -> roles allowed to request it
CAPABILITIES = {
    "create": {Role.PATIENT, Role.ADMIN},
    "confirm": {Role.PHARMACIST, Role.ADMIN},
    "mark_preparing": {Role.PHARMACIST, Role.ADMIN},
    "set_pricing": {Role.PHARMACIST, Role.ADMIN},
    "set_medications": {Role.PHARMACIST, Role.ADMIN},
    "assign_courier": {Role.PHARMACIST, Role.ADMIN, Role.SYSTEM},
    "accept_assignment": {Role.COURIER},
    "decline_assignment": {Role.COURIER, Role.SYSTEM},
    "confirm_arrival": {Role.COURIER},
    "mark_delivered": {Role.COURIER, Role.PATIENT, Role.ADMIN},
    "cancel": {Role.PATIENT, Role.PHARMACIST, Role.ADMIN},
}

def require_capability(actor: Actor, operation: str, order: Optional[Order] = None) -> None:
    """Reject the call unless ``actor`` may perform ``operation`` on ``order``.

    Patients may only touch their own orders and pharmacists bound to a
    pharmacy only that pharmacy's orders.
    """
    current = order.status if order is not None else None
    order_id = order.id if order is not None else None
    if actor.is_suspended:
        raise Forbidden("Account is suspended", order_id=order_id, current_status=current)
    if actor.role not in CAPABILITIES.get(operation, set()):
        raise Forbidden(
            f"Role '{actor.role.value}' may not {operation.replace('_', ' ')}",
            order_id=order_id,
            current_status=current,
        )
    if order is None:
        return
    if actor.role == Role.PATIENT and order.patient_id != actor.user_id:
        raise Forbidden("Order belongs to another patient", order_id=order_id, current_status=current)
    if actor.role == Role.PHARMACIST and actor.pharmacy_id and actor.pharmacy_id != order.pharmacy_id:
        raise Forbidden("Order belongs to another pharmacy", order_id=order_id, current_status=current)
