from datetime import datetime, timedelta

from dispatch.domain.models import Order
from dispatch.application.actors import Actor, Role
from dispatch.application.courier_pool import CourierPool
from dispatch.application.state_machine import OrderStateMachine

PHARMACY_ID = "pharmacy-1"
# one degree of latitude on the haversine sphere
KM_PER_DEGREE = 111.19492664455873
BASE_LAT = 36.75
BASE_LNG = 3.06

class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

class FakePrescriptions:
    def __init__(self, **statuses):
        self.statuses = dict(statuses)
        self.calls = []

    def get_status(self, prescription_id):
        self.calls.append(prescription_id)
        return self.statuses.get(prescription_id)

def north_of(km: float):
    """Coordinates ``km`` due north of the base point."""
    return BASE_LAT + km / KM_PER_DEGREE, BASE_LNG

def courier_actor(user_id: str) -> Actor:
    return Actor(user_id, Role.COURIER)

def add_courier(session_factory, clock, user_id, km=1.0, rating=5.0, max_active_orders=1,
                active_order_count=0, is_available=True):
    """Register a courier ``km`` north of the base point and return its id."""
    latitude, longitude = north_of(km) if km is not None else (None, None)
    with session_factory() as session:
        pool = CourierPool(session)
        courier = pool.register(
            user_id=user_id,
            name=user_id.title(),
            latitude=latitude,
            longitude=longitude,
            rating=rating,
            max_active_orders=max_active_orders,
            is_available=is_available,
            now=clock(),
        )
        if active_order_count:
            courier.active_order_count = active_order_count
            session.commit()
        return courier.id

def new_order(session_factory, clock, patient, pharmacist=None, status="pending", prescriptions=None, **fields):
    """Create an order and walk it forward to ``status`` without dispatching."""
    data = dict(
        patient_id=patient.user_id,
        pharmacy_id=PHARMACY_ID,
        delivery_address="12 Rue Didouche Mourad",
        medications=[{"name": "Amoxicillin 500mg", "requires_bon": True}],
        delivery_latitude=BASE_LAT,
        delivery_longitude=BASE_LNG,
    )
    data.update(fields)
    with session_factory() as session:
        machine = OrderStateMachine(session, prescriptions=prescriptions, clock=clock)
        order = machine.create(patient, **data)
        if status in ("confirmed", "preparing"):
            machine.confirm(order.id, pharmacist)
        if status == "preparing":
            machine.mark_preparing(order.id, pharmacist)
        return order.id

def read_order(session_factory, order_id) -> Order:
    with session_factory() as session:
        order = session.get(Order, order_id)
        _ = order.history
        return order

def read_courier(session_factory, courier_id):
    with session_factory() as session:
        return CourierPool(session).require(courier_id)
