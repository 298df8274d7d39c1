from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from dispatch.infrastructure.db import get_db
from dispatch.application.actors import Actor
from dispatch.application.notifications import NotificationFanout
from dispatch.application.order_store import OrderStore
from dispatch.application.schemas import NotificationRead, ReplayRequest
from .deps import get_actor, require_admin

router = APIRouter(prefix="/notifications", tags=["notifications"])

@router.get("/", response_model=list[NotificationRead])
def list_notifications(unread_only: bool = False, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    """The caller's notifications, newest first."""
    return NotificationFanout(db).list_for_user(actor.user_id, unread_only)

@router.patch("/{notification_id}/read", response_model=NotificationRead)
def mark_read(notification_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return NotificationFanout(db).mark_read(notification_id, actor.user_id)

@router.post("/replay", response_model=list[NotificationRead])
def replay(payload: ReplayRequest, actor: Actor = Depends(require_admin), db: Session = Depends(get_db)):
    """Re-run fanout for one history entry; only records that are missing get created."""
    store = OrderStore(db)
    order = store.require(payload.order_id)
    entry = store.history_entry(payload.order_id, payload.seq)
    if entry is None:
        raise HTTPException(status_code=404, detail="History entry not found")
    return NotificationFanout(db).replay(order, entry)
