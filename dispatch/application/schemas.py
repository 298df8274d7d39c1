from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Any

class MedicationItem(BaseModel):
    name: str
    quantity: int = 1
    requires_bon: bool = False
    price: Optional[float] = Field(default=None, ge=0)

class OrderCreate(BaseModel):
    pharmacy_id: str
    delivery_address: str
    # admins may place orders on behalf of a patient
    patient_id: Optional[str] = None
    prescription_id: Optional[str] = None
    medications: list[MedicationItem] = []
    delivery_latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    delivery_longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    delivery_notes: Optional[str] = None

class PricingUpdate(BaseModel):
    total_amount: float = Field(ge=0)

class MedicationsUpdate(BaseModel):
    medications: list[MedicationItem] = Field(min_length=1)

class AssignRequest(BaseModel):
    courier_id: str

class CancelRequest(BaseModel):
    reason: Optional[str] = None

class DeliveredRequest(BaseModel):
    courier_id: Optional[str] = None

class EventRequest(BaseModel):
    event: str
    payload: dict[str, Any] = {}

class HistoryRead(BaseModel):
    seq: int
    event: str
    from_status: Optional[str] = None
    to_status: str
    actor_id: str
    actor_role: str
    note: Optional[str] = None
    created_at: datetime
    class Config:
        from_attributes = True

class OrderRead(BaseModel):
    id: str
    patient_id: str
    pharmacy_id: str
    prescription_id: Optional[str] = None
    status: str
    medications: list[dict[str, Any]] = []
    delivery_address: str
    delivery_latitude: Optional[float] = None
    delivery_longitude: Optional[float] = None
    delivery_notes: Optional[str] = None
    delivery_person_id: Optional[str] = None
    confirmed_by: Optional[str] = None
    total_amount: Optional[float] = None
    estimated_delivery_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    courier_accepted_at: Optional[datetime] = None
    courier_arrived_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int
    history: list[HistoryRead] = []
    class Config:
        from_attributes = True

class OrderSummary(BaseModel):
    id: str
    patient_id: str
    pharmacy_id: str
    status: str
    delivery_person_id: Optional[str] = None
    total_amount: Optional[float] = None
    created_at: datetime
    updated_at: datetime
    class Config:
        from_attributes = True

class CourierCreate(BaseModel):
    # taken from the token for couriers registering themselves
    user_id: Optional[str] = None
    name: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    rating: float = Field(default=5.0, ge=0, le=5)
    max_active_orders: Optional[int] = Field(default=None, ge=1)
    is_available: bool = True

class CourierHeartbeat(BaseModel):
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    is_available: Optional[bool] = None

class CourierStatusUpdate(BaseModel):
    is_available: bool

class CourierRead(BaseModel):
    id: str
    user_id: str
    name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_available: bool
    rating: float
    active_order_count: int
    max_active_orders: int
    total_deliveries: int
    last_heartbeat_at: Optional[datetime] = None
    class Config:
        from_attributes = True

class NotificationRead(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    type: str
    order_id: Optional[str] = None
    action: Optional[str] = None
    is_read: bool
    created_at: datetime
    class Config:
        from_attributes = True

class ReplayRequest(BaseModel):
    order_id: str
    seq: int

class QueueEntryRead(BaseModel):
    order_id: str
    attempts: int
    first_queued_at: datetime
    next_attempt_at: datetime
    last_reason: Optional[str] = None
    timeout_reported: bool

class TimeoutRead(BaseModel):
    error: str
    detail: str
    order_id: Optional[str] = None
    current_status: Optional[str] = None
    waited_seconds: float
    attempts: int

class SweepRead(BaseModel):
    stale_couriers: list[str]
    expired_assignments: list[str]
    recovered: list[str]
    assigned: list[str]
    requeued: list[str]
    dropped: list[str]
    timeouts: list[TimeoutRead]

class ErrorRead(BaseModel):
    error: str
    detail: str
    order_id: Optional[str] = None
    current_status: Optional[str] = None
