import pytest
from sqlalchemy import select

from dispatch.domain.models import Notification
from dispatch.application.actors import Actor, Role
from dispatch.application.errors import InvalidTransition, Forbidden, CourierUnavailable, AssignmentExpired, NotFound
from dispatch.application.notifications import RATE_DELIVERY
from dispatch.application.order_store import OrderStore
from dispatch.application.state_machine import allowed_events
from helpers import add_courier, new_order, read_order, read_courier, courier_actor

def test_full_lifecycle_records_history(session_factory, clock, machine, patient, pharmacist, db):
    courier_id = add_courier(session_factory, clock, "courier-a")
    order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")
    courier = courier_actor("courier-a")

    machine.assign_courier(order_id, courier_id, pharmacist)
    clock.advance(30)
    machine.accept_assignment(order_id, courier)
    clock.advance(600)
    machine.confirm_arrival(order_id, courier)
    order = machine.mark_delivered(order_id, courier_id, courier)

    assert order.status == "delivered"
    assert order.delivered_at == clock.now
    assert order.delivery_person_id == courier_id
    events = [h.event for h in read_order(session_factory, order_id).history]
    assert events == [
        "create", "confirm", "mark_preparing", "assign_courier",
        "accept_assignment", "confirm_arrival", "mark_delivered",
    ]
    history = read_order(session_factory, order_id).history
    assert [h.seq for h in history] == list(range(1, 8))
    assert history[-1].actor_id == "courier-a"
    assert history[-1].actor_role == "courier"

    stored = read_courier(session_factory, courier_id)
    assert stored.active_order_count == 0
    assert stored.total_deliveries == 1

    rating_prompt = db.scalars(
        select(Notification).where(Notification.user_id == patient.user_id, Notification.action == RATE_DELIVERY)
    ).all()
    assert len(rating_prompt) == 1

def test_confirm_refused_while_prescription_pending(session_factory, clock, machine, patient, pharmacist):
    order_id = new_order(session_factory, clock, patient, prescription_id="rx-pending")

    with pytest.raises(InvalidTransition) as exc:
        machine.confirm(order_id, pharmacist)

    assert exc.value.current_status == "pending"
    order = read_order(session_factory, order_id)
    assert order.status == "pending"
    assert len(order.history) == 1

def test_confirm_refused_when_prescription_cannot_be_checked(session_factory, clock, machine, patient, pharmacist):
    order_id = new_order(session_factory, clock, patient, prescription_id="rx-unknown")

    with pytest.raises(InvalidTransition):
        machine.confirm(order_id, pharmacist)

def test_confirm_with_processed_prescription(session_factory, clock, machine, patient, pharmacist, prescriptions):
    order_id = new_order(session_factory, clock, patient, prescription_id="rx-ok")

    order = machine.confirm(order_id, pharmacist)

    assert order.status == "confirmed"
    assert order.confirmed_by == pharmacist.user_id
    assert prescriptions.calls == ["rx-ok"]

def test_transition_not_in_table_is_rejected(session_factory, clock, machine, patient, pharmacist):
    order_id = new_order(session_factory, clock, patient)

    with pytest.raises(InvalidTransition) as exc:
        machine.mark_preparing(order_id, pharmacist)

    assert exc.value.current_status == "pending"
    assert exc.value.order_id == order_id

def test_terminal_orders_cannot_move(session_factory, clock, machine, patient):
    order_id = new_order(session_factory, clock, patient)
    machine.cancel(order_id, patient, reason="changed my mind")

    with pytest.raises(InvalidTransition) as exc:
        machine.cancel(order_id, patient)

    assert "already cancelled" in exc.value.message
    assert read_order(session_factory, order_id).cancel_reason == "changed my mind"

def test_unknown_order(machine, patient):
    with pytest.raises(NotFound):
        machine.cancel("missing", patient)

class TestCapabilities:
    def test_patient_cannot_confirm(self, session_factory, clock, machine, patient):
        order_id = new_order(session_factory, clock, patient)
        with pytest.raises(Forbidden):
            machine.confirm(order_id, patient)

    def test_other_patient_cannot_cancel(self, session_factory, clock, machine, patient):
        order_id = new_order(session_factory, clock, patient)
        with pytest.raises(Forbidden):
            machine.cancel(order_id, Actor("patient-2", Role.PATIENT))

    def test_pharmacist_of_another_pharmacy(self, session_factory, clock, machine, patient):
        order_id = new_order(session_factory, clock, patient)
        with pytest.raises(Forbidden):
            machine.confirm(order_id, Actor("pharmacist-9", Role.PHARMACIST, pharmacy_id="pharmacy-9"))

    def test_suspended_account(self, session_factory, clock, machine, patient):
        order_id = new_order(session_factory, clock, patient)
        with pytest.raises(Forbidden):
            machine.confirm(order_id, Actor("pharmacist-1", Role.PHARMACIST, is_suspended=True))

    def test_patient_cannot_cancel_in_transit(self, session_factory, clock, machine, patient, pharmacist):
        courier_id = add_courier(session_factory, clock, "courier-a")
        order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")
        machine.assign_courier(order_id, courier_id, pharmacist)

        with pytest.raises(Forbidden) as exc:
            machine.cancel(order_id, patient)

        assert exc.value.current_status == "in_transit"

    def test_admin_cancel_in_transit_frees_courier(self, session_factory, clock, machine, patient, pharmacist, admin):
        courier_id = add_courier(session_factory, clock, "courier-a")
        order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")
        machine.assign_courier(order_id, courier_id, pharmacist)

        order = machine.cancel(order_id, admin, reason="address unreachable")

        assert order.status == "cancelled"
        assert read_courier(session_factory, courier_id).active_order_count == 0

class TestAssignment:
    def test_busy_courier_rejected_without_writes(self, session_factory, clock, machine, patient, pharmacist):
        courier_id = add_courier(session_factory, clock, "courier-a", active_order_count=1)
        order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")

        with pytest.raises(CourierUnavailable) as exc:
            machine.assign_courier(order_id, courier_id, pharmacist)

        assert exc.value.current_status == "preparing"
        order = read_order(session_factory, order_id)
        assert order.status == "preparing"
        assert order.delivery_person_id is None
        assert len(order.history) == 3

    def test_assignment_sets_eta_and_reserves(self, session_factory, clock, machine, patient, pharmacist):
        courier_id = add_courier(session_factory, clock, "courier-a", km=5.0)
        order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")

        order = machine.assign_courier(order_id, courier_id, pharmacist)

        assert order.status == "in_transit"
        assert order.assigned_at == clock.now
        # 5 km at 25 km/h plus handover
        minutes = (order.estimated_delivery_at - clock.now).total_seconds() / 60
        assert minutes == pytest.approx(17.0, abs=0.01)
        assert read_courier(session_factory, courier_id).active_order_count == 1

    def test_decline_returns_order_to_preparing(self, session_factory, clock, machine, patient, pharmacist):
        courier_id = add_courier(session_factory, clock, "courier-a")
        order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")
        machine.assign_courier(order_id, courier_id, pharmacist)

        order = machine.decline_assignment(order_id, courier_actor("courier-a"))

        assert order.status == "preparing"
        assert order.delivery_person_id is None
        assert order.estimated_delivery_at is None
        assert read_order(session_factory, order_id).history[-1].note == f"declined:{courier_id}"
        assert read_courier(session_factory, courier_id).active_order_count == 0

    def test_decline_after_accept_is_rejected(self, session_factory, clock, machine, patient, pharmacist):
        courier_id = add_courier(session_factory, clock, "courier-a")
        order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")
        machine.assign_courier(order_id, courier_id, pharmacist)
        machine.accept_assignment(order_id, courier_actor("courier-a"))

        with pytest.raises(InvalidTransition):
            machine.decline_assignment(order_id, courier_actor("courier-a"))

    def test_accept_after_window_expires(self, session_factory, clock, machine, patient, pharmacist):
        courier_id = add_courier(session_factory, clock, "courier-a")
        order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")
        machine.assign_courier(order_id, courier_id, pharmacist)
        clock.advance(181)

        with pytest.raises(AssignmentExpired):
            machine.accept_assignment(order_id, courier_actor("courier-a"))

    def test_other_courier_cannot_accept(self, session_factory, clock, machine, patient, pharmacist):
        courier_id = add_courier(session_factory, clock, "courier-a")
        add_courier(session_factory, clock, "courier-b")
        order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")
        machine.assign_courier(order_id, courier_id, pharmacist)

        with pytest.raises(Forbidden):
            machine.accept_assignment(order_id, courier_actor("courier-b"))

    def test_delivered_by_wrong_courier(self, session_factory, clock, machine, patient, pharmacist):
        courier_id = add_courier(session_factory, clock, "courier-a")
        other_id = add_courier(session_factory, clock, "courier-b")
        order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")
        machine.assign_courier(order_id, courier_id, pharmacist)

        with pytest.raises(Forbidden):
            machine.mark_delivered(order_id, other_id, patient)

        assert read_order(session_factory, order_id).status == "in_transit"

class TestPricing:
    def test_pricing_keeps_status(self, session_factory, clock, machine, patient, pharmacist):
        order_id = new_order(session_factory, clock, patient, pharmacist, status="confirmed")

        order = machine.set_pricing(order_id, 1250.0, pharmacist)

        assert order.status == "confirmed"
        assert float(order.total_amount) == 1250.0
        assert read_order(session_factory, order_id).history[-1].event == "set_pricing"

    def test_pricing_before_confirmation(self, session_factory, clock, machine, patient, pharmacist):
        order_id = new_order(session_factory, clock, patient)
        with pytest.raises(InvalidTransition):
            machine.set_pricing(order_id, 10.0, pharmacist)

    def test_negative_amount(self, session_factory, clock, machine, patient, pharmacist):
        order_id = new_order(session_factory, clock, patient, pharmacist, status="confirmed")
        with pytest.raises(InvalidTransition):
            machine.set_pricing(order_id, -1.0, pharmacist)

class TestMedications:
    def test_pharmacist_corrects_bon_flag(self, session_factory, clock, machine, patient, pharmacist):
        order_id = new_order(session_factory, clock, patient, pharmacist, status="confirmed",
                             medications=[{"name": "Amoxicillin 500mg", "requires_bon": False}])

        order = machine.set_medications(
            order_id, [{"name": "Amoxicillin 500mg", "quantity": 1, "requires_bon": True}], pharmacist,
        )

        assert order.status == "confirmed"
        assert order.requires_bon is True
        entry = read_order(session_factory, order_id).history[-1]
        assert entry.event == "set_medications"
        assert entry.note == "1 items"

    def test_prices_set_the_total(self, session_factory, clock, machine, patient, pharmacist):
        order_id = new_order(session_factory, clock, patient)

        order = machine.set_medications(order_id, [
            {"name": "Doliprane 1g", "quantity": 2, "price": 150.0},
            {"name": "Augmentin", "quantity": 1, "price": 820.0},
            {"name": "Gauze"},
        ], pharmacist)

        assert order.status == "pending"
        assert float(order.total_amount) == 1120.0

    def test_without_prices_total_is_kept(self, session_factory, clock, machine, patient, pharmacist):
        order_id = new_order(session_factory, clock, patient, pharmacist, status="confirmed")
        machine.set_pricing(order_id, 500.0, pharmacist)

        order = machine.set_medications(order_id, [{"name": "Gauze"}], pharmacist)

        assert float(order.total_amount) == 500.0

    def test_locked_once_preparing(self, session_factory, clock, machine, patient, pharmacist):
        order_id = new_order(session_factory, clock, patient, pharmacist, status="preparing")

        with pytest.raises(InvalidTransition) as exc:
            machine.set_medications(order_id, [{"name": "Gauze"}], pharmacist)

        assert exc.value.current_status == "preparing"

    def test_patient_cannot_edit(self, session_factory, clock, machine, patient):
        order_id = new_order(session_factory, clock, patient)

        with pytest.raises(Forbidden):
            machine.set_medications(order_id, [{"name": "Gauze"}], patient)

    def test_empty_list(self, session_factory, clock, machine, patient, pharmacist):
        order_id = new_order(session_factory, clock, patient)

        with pytest.raises(InvalidTransition):
            machine.set_medications(order_id, [], pharmacist)

        assert len(read_order(session_factory, order_id).history) == 1

def test_stale_writer_loses(session_factory, clock, patient, pharmacist):
    order_id = new_order(session_factory, clock, patient)
    stale_session = session_factory()
    stale = OrderStore(stale_session).require(order_id)
    stale_session.commit()

    with session_factory() as session:
        OrderStore(session).compare_and_set(OrderStore(session).require(order_id), "pending", status="confirmed")
        session.commit()

    with pytest.raises(InvalidTransition) as exc:
        OrderStore(stale_session).compare_and_set(stale, "pending", status="cancelled")
    stale_session.close()

    assert exc.value.current_status == "confirmed"
    assert read_order(session_factory, order_id).status == "confirmed"

def test_updated_at_strictly_increases_on_same_tick(session_factory, clock, machine, patient, pharmacist):
    order_id = new_order(session_factory, clock, patient)
    first = read_order(session_factory, order_id)

    machine.confirm(order_id, pharmacist)
    machine.set_pricing(order_id, 100.0, pharmacist)
    last = read_order(session_factory, order_id)

    assert last.updated_at > first.updated_at
    assert last.version == first.version + 2

def test_allowed_events():
    assert allowed_events("in_transit") == [
        "accept_assignment", "cancel", "confirm_arrival", "decline_assignment", "mark_delivered",
    ]
    assert allowed_events("delivered") == []
