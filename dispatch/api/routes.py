from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional

from dispatch.infrastructure.db import get_db
from dispatch.application.actors import Actor, Role
from dispatch.application.coordinator import DispatchCoordinator, OrderEvent
from dispatch.application.courier_pool import CourierPool
from dispatch.application.order_store import OrderStore
from dispatch.application.schemas import (
    OrderCreate, OrderRead, OrderSummary, PricingUpdate, MedicationsUpdate, AssignRequest, CancelRequest,
    DeliveredRequest, EventRequest,
)
from dispatch.domain.models import Order
from .deps import get_actor, get_coordinator

router = APIRouter(prefix="/orders", tags=["orders"])

def _can_view(actor: Actor, order: Order, db: Session) -> bool:
    if actor.role == Role.ADMIN:
        return True
    if actor.role == Role.PATIENT:
        return order.patient_id == actor.user_id
    if actor.role == Role.PHARMACIST:
        return not actor.pharmacy_id or order.pharmacy_id == actor.pharmacy_id
    if actor.role == Role.COURIER:
        courier = CourierPool(db).by_user(actor.user_id)
        return courier is not None and order.delivery_person_id == courier.id
    return False

@router.get("/", response_model=list[OrderSummary])
def list_orders(status: Optional[str] = None, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    """Orders visible to the caller, oldest first."""
    store = OrderStore(db)
    if actor.role == Role.PATIENT:
        return store.list(status=status, patient_id=actor.user_id)
    if actor.role == Role.PHARMACIST:
        return store.list(status=status, pharmacy_id=actor.pharmacy_id)
    if actor.role == Role.COURIER:
        courier = CourierPool(db).by_user(actor.user_id)
        if courier is None:
            return []
        return store.list(status=status, courier_id=courier.id)
    return store.list(status=status)

@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    """Get an order with its status history."""
    order = OrderStore(db).get(order_id)
    if not order or not _can_view(actor, order, db):
        raise HTTPException(status_code=404, detail="Order not found")
    return order

@router.post("/", response_model=OrderRead, status_code=201)
def create_order(payload: OrderCreate, actor: Actor = Depends(get_actor),
                 coordinator: DispatchCoordinator = Depends(get_coordinator)):
    data = payload.model_dump()
    return coordinator.create_order(actor, **data)

@router.post("/{order_id}/confirm", response_model=OrderRead)
def confirm_order(order_id: str, actor: Actor = Depends(get_actor),
                  coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.confirm(order_id, actor)

@router.post("/{order_id}/pricing", response_model=OrderRead)
def set_pricing(order_id: str, payload: PricingUpdate, actor: Actor = Depends(get_actor),
                coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.set_pricing(order_id, payload.total_amount, actor)

@router.put("/{order_id}/medications", response_model=OrderRead)
def set_medications(order_id: str, payload: MedicationsUpdate, actor: Actor = Depends(get_actor),
                    coordinator: DispatchCoordinator = Depends(get_coordinator)):
    """Replace the medication list; unit prices, when given, set the order total."""
    medications = [item.model_dump() for item in payload.medications]
    return coordinator.set_medications(order_id, medications, actor)

@router.post("/{order_id}/assign", response_model=OrderRead)
def assign_courier(order_id: str, payload: AssignRequest, actor: Actor = Depends(get_actor),
                   coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.assign(order_id, payload.courier_id, actor)

@router.post("/{order_id}/preparing", response_model=OrderRead)
def mark_preparing(order_id: str, actor: Actor = Depends(get_actor),
                   coordinator: DispatchCoordinator = Depends(get_coordinator)):
    """Hand the order to dispatch; the response already reflects the assignment if one was made."""
    return coordinator.mark_preparing(order_id, actor)

@router.post("/{order_id}/accept", response_model=OrderRead)
def accept_assignment(order_id: str, actor: Actor = Depends(get_actor),
                      coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.accept(order_id, actor)

@router.post("/{order_id}/decline", response_model=OrderRead)
def decline_assignment(order_id: str, actor: Actor = Depends(get_actor),
                       coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.decline(order_id, actor)

@router.post("/{order_id}/arrival", response_model=OrderRead)
def confirm_arrival(order_id: str, actor: Actor = Depends(get_actor),
                    coordinator: DispatchCoordinator = Depends(get_coordinator)):
    return coordinator.arrive(order_id, actor)

@router.post("/{order_id}/delivered", response_model=OrderRead)
def mark_delivered(order_id: str, payload: Optional[DeliveredRequest] = None, actor: Actor = Depends(get_actor),
                   coordinator: DispatchCoordinator = Depends(get_coordinator)):
    courier_id = payload.courier_id if payload else None
    return coordinator.deliver(order_id, actor, courier_id)

@router.post("/{order_id}/cancel", response_model=OrderRead)
def cancel_order(order_id: str, payload: Optional[CancelRequest] = None, actor: Actor = Depends(get_actor),
                 coordinator: DispatchCoordinator = Depends(get_coordinator)):
    reason = payload.reason if payload else None
    return coordinator.cancel(order_id, actor, reason)

@router.post("/{order_id}/events", response_model=OrderRead)
def post_event(order_id: str, payload: EventRequest, actor: Actor = Depends(get_actor),
               coordinator: DispatchCoordinator = Depends(get_coordinator)):
    try:
        event = OrderEvent(payload.event)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown event '{payload.event}'")
    if event == OrderEvent.CREATED:
        raise HTTPException(status_code=422, detail="Use POST /orders/ to create an order")
    if event == OrderEvent.PRICED and "total_amount" not in payload.payload:
        raise HTTPException(status_code=422, detail="total_amount is required")
    return coordinator.handle(event, order_id, actor, payload.payload)
