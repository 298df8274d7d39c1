import pytest
from sqlalchemy import select, func

from dispatch.domain.models import Notification
from dispatch.application.errors import Forbidden, NotFound
from dispatch.application.notifications import NotificationFanout, dedup_key
from dispatch.application.order_store import OrderStore
from helpers import add_courier, new_order, courier_actor

def _for(db, user_id):
    return db.scalars(select(Notification).where(Notification.user_id == user_id).order_by(Notification.created_at)).all()

def test_assignment_notifies_patient_courier_and_pharmacist(session_factory, clock, machine, patient, pharmacist, db):
    courier_id = add_courier(session_factory, clock, "courier-a")
    order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")

    machine.assign_courier(order_id, courier_id, pharmacist)

    courier_notes = _for(db, "courier-a")
    assert len(courier_notes) == 1
    assert courier_notes[0].type == "delivery"
    assert "bon" in courier_notes[0].body
    assert any(n.title == "Courier assigned to your order" for n in _for(db, patient.user_id))
    assert any(n.title == "Courier assigned" for n in _for(db, pharmacist.user_id))

def test_no_bon_mention_without_paper_prescription(session_factory, clock, machine, patient, pharmacist, db):
    courier_id = add_courier(session_factory, clock, "courier-a")
    order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing",
                         medications=[{"name": "Paracetamol", "requires_bon": False}])

    machine.assign_courier(order_id, courier_id, pharmacist)

    assert "bon" not in _for(db, "courier-a")[0].body

def test_replay_is_a_no_op(session_factory, clock, machine, patient, pharmacist, db):
    courier_id = add_courier(session_factory, clock, "courier-a")
    order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")
    machine.assign_courier(order_id, courier_id, pharmacist)
    before = db.scalar(select(func.count(Notification.id)))

    store = OrderStore(db)
    order = store.require(order_id)
    for entry in store.history(order_id):
        assert NotificationFanout(db).replay(order, entry) == []

    assert db.scalar(select(func.count(Notification.id))) == before

def test_replay_restores_missing_record(session_factory, clock, machine, patient, pharmacist, db):
    order_id = new_order(session_factory, clock, patient, pharmacist, status="confirmed")
    store = OrderStore(db)
    entry = store.history_entry(order_id, 2)
    key = dedup_key(order_id, "confirm", patient.user_id, 2)
    db.delete(db.scalar(select(Notification).where(Notification.dedup_key == key)))
    db.commit()

    created = NotificationFanout(db).replay(store.require(order_id), entry)

    assert [n.dedup_key for n in created] == [key]

def test_decline_replay_reaches_released_courier(session_factory, clock, machine, patient, pharmacist, db):
    courier_id = add_courier(session_factory, clock, "courier-a")
    order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")
    machine.assign_courier(order_id, courier_id, pharmacist)
    machine.decline_assignment(order_id, courier_actor("courier-a"))

    declined = [n for n in _for(db, "courier-a") if n.title == "Delivery declined"]

    assert len(declined) == 1

def test_replaying_old_assignment_after_reassignment(session_factory, clock, machine, patient, pharmacist, db):
    first_id = add_courier(session_factory, clock, "courier-a")
    second_id = add_courier(session_factory, clock, "courier-b", km=3.0)
    order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")
    machine.assign_courier(order_id, first_id, pharmacist)
    machine.decline_assignment(order_id, courier_actor("courier-a"))
    machine.assign_courier(order_id, second_id, pharmacist)

    store = OrderStore(db)
    old_entry = next(h for h in store.history(order_id) if h.event == "assign_courier")
    assert old_entry.note == first_id

    assert NotificationFanout(db).replay(store.require(order_id), old_entry) == []
    assert len([n for n in _for(db, "courier-b") if n.title == "New delivery assigned"]) == 1

    # a lost record comes back to the courier the entry named, not the current one
    key = dedup_key(order_id, "assign_courier", "courier-a", old_entry.seq)
    db.delete(db.scalar(select(Notification).where(Notification.dedup_key == key)))
    db.commit()
    created = NotificationFanout(db).replay(store.require(order_id), old_entry)

    assert [(n.user_id, n.title) for n in created] == [("courier-a", "New delivery assigned")]

def test_medication_update_notifies_patient(session_factory, clock, machine, patient, pharmacist, db):
    order_id = new_order(session_factory, clock, patient, pharmacist, status="confirmed")

    machine.set_medications(order_id, [{"name": "Ibuprofen 400mg", "quantity": 2}], pharmacist)

    assert any(n.title == "Order updated" for n in _for(db, patient.user_id))

def test_delivered_prompts_for_rating(session_factory, clock, machine, patient, pharmacist, db):
    courier_id = add_courier(session_factory, clock, "courier-a")
    order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")
    machine.assign_courier(order_id, courier_id, pharmacist)
    machine.mark_delivered(order_id, courier_id, patient)

    delivered = [n for n in _for(db, patient.user_id) if n.title == "Order delivered"]

    assert len(delivered) == 1
    assert delivered[0].action == "rate_delivery"
    assert any(n.title == "Delivery confirmed" for n in _for(db, "courier-a"))

def test_recipients_are_unique_per_entry(session_factory, clock, machine, admin, db):
    # the admin is patient and confirming pharmacist of this order at once
    order_id = new_order(session_factory, clock, admin, admin, status="confirmed", patient_id=admin.user_id)
    machine.cancel(order_id, admin)

    cancelled = [n for n in _for(db, admin.user_id) if n.title == "Order cancelled"]

    assert len(cancelled) == 1

class TestReadState:
    def test_mark_read(self, session_factory, clock, patient, db):
        new_order(session_factory, clock, patient)
        notification = _for(db, patient.user_id)[0]
        db.commit()

        updated = NotificationFanout(db).mark_read(notification.id, patient.user_id)

        assert updated.is_read is True
        assert NotificationFanout(db).list_for_user(patient.user_id, unread_only=True) == []

    def test_cannot_read_someone_elses(self, session_factory, clock, patient, db):
        new_order(session_factory, clock, patient)
        notification = _for(db, patient.user_id)[0]

        with pytest.raises(Forbidden):
            NotificationFanout(db).mark_read(notification.id, "patient-2")

    def test_unknown_notification(self, db):
        with pytest.raises(NotFound):
            NotificationFanout(db).mark_read("missing", "patient-1")
