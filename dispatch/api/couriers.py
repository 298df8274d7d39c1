from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from dispatch.core_settings import get_settings
from dispatch.infrastructure.db import get_db
from dispatch.application.actors import Actor, Role
from dispatch.application.courier_pool import CourierPool
from dispatch.application.errors import Forbidden
from dispatch.application.notifications import NotificationFanout
from dispatch.application.schemas import CourierCreate, CourierRead, CourierHeartbeat, CourierStatusUpdate
from dispatch.domain.models import utcnow
from shared.core import get_logger
from .deps import get_actor, require_admin

router = APIRouter(prefix="/couriers", tags=["couriers"])
logger = get_logger(__name__)

def _pool(db: Session) -> CourierPool:
    return CourierPool(db, get_settings().COURIER_HEARTBEAT_STALE_SECONDS)

@router.get("/", response_model=list[CourierRead])
def list_couriers(actor: Actor = Depends(require_admin), db: Session = Depends(get_db)):
    return _pool(db).list()

@router.get("/{courier_id}", response_model=CourierRead)
def get_courier(courier_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    courier = _pool(db).get(courier_id)
    if not courier:
        raise HTTPException(status_code=404, detail="Courier not found")
    if actor.role != Role.ADMIN and courier.user_id != actor.user_id:
        raise HTTPException(status_code=404, detail="Courier not found")
    return courier

@router.post("/", response_model=CourierRead, status_code=201)
def register_courier(payload: CourierCreate, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    """Couriers register themselves; admins may register on behalf of a user."""
    if actor.is_suspended or actor.role not in (Role.COURIER, Role.ADMIN):
        raise Forbidden("Only couriers and admins can register couriers")
    user_id = actor.user_id if actor.role == Role.COURIER else (payload.user_id or actor.user_id)
    pool = _pool(db)
    if pool.by_user(user_id):
        raise HTTPException(status_code=409, detail="Courier already registered for this user")
    return pool.register(
        user_id=user_id,
        name=payload.name,
        latitude=payload.latitude,
        longitude=payload.longitude,
        rating=payload.rating,
        max_active_orders=payload.max_active_orders or get_settings().DEFAULT_COURIER_CAPACITY,
        is_available=payload.is_available,
    )

@router.post("/{courier_id}/heartbeat", response_model=CourierRead)
def heartbeat(courier_id: str, payload: CourierHeartbeat, actor: Actor = Depends(get_actor),
              db: Session = Depends(get_db)):
    pool = _pool(db)
    courier = pool.require(courier_id)
    if actor.is_suspended or courier.user_id != actor.user_id:
        raise Forbidden("Heartbeats can only be sent by the courier")
    return pool.heartbeat(courier_id, payload.latitude, payload.longitude, payload.is_available)

@router.patch("/{courier_id}/status", response_model=CourierRead)
def set_status(courier_id: str, payload: CourierStatusUpdate, actor: Actor = Depends(require_admin),
               db: Session = Depends(get_db)):
    """Admin override of a courier's availability; the courier is told about it."""
    pool = _pool(db)
    courier = pool.set_availability(courier_id, payload.is_available, now=utcnow())
    if payload.is_available:
        body = "An administrator made you available for deliveries again."
    else:
        body = "An administrator took you off the delivery rota. Active orders are unaffected."
    NotificationFanout(db).account_notice(courier.user_id, "Availability changed", body)
    db.commit()
    logger.info(
        "Courier availability overridden",
        extra={'extra_fields': {'courier_id': courier_id, 'is_available': payload.is_available, 'admin_id': actor.user_id}},
    )
    return courier
