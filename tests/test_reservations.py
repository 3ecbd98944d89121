import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from app.errors import AlreadyFinalized, InvalidRequest, ReservationNotFound, SlotConflict
from app.models import PaymentStatus, Reservation
from app.reservations import (
    Customer, attach_refund, create_reservation, expire_stale_pending, list_reservations,
    reservation_stats, transition, update_notes,
)
from app.schedule import Slot, check_availability

from tests.conftest import DAY, NOW

CUSTOMER = Customer("Diego", "+54 11 4444 0000", "diego@example.com")


def court_a(time="14:00", duration=90, sport="futbol"):
    return Slot.build(sport, DAY, time, duration)


def test_create_then_slot_is_taken(test_db_session):
    slot = court_a()
    assert check_availability(test_db_session, slot, NOW)

    r = create_reservation(test_db_session, slot, CUSTOMER, "22500", NOW)

    assert r.payment_status == "pending"
    assert r.start_time == "14:00"
    assert r.end_time == "15:30"
    assert r.amount == Decimal("22500.00")
    assert not check_availability(test_db_session, slot, NOW)

def test_create_conflicts_with_overlapping_reservation(test_db_session, make_reservation):
    make_reservation(time="14:00", duration=90)
    with pytest.raises(SlotConflict):
        create_reservation(test_db_session, court_a("15:00", 60), CUSTOMER, "8000", NOW)

def test_create_conflicts_with_time_block(test_db_session, make_block):
    make_block(start="14:00", end="16:00")
    with pytest.raises(SlotConflict):
        create_reservation(test_db_session, court_a("15:00", 60), CUSTOMER, "8000", NOW)
    assert test_db_session.query(Reservation).count() == 0

def test_failed_reservation_frees_the_slot(test_db_session, make_reservation):
    make_reservation(time="14:00", duration=90, status="failed")
    r = create_reservation(test_db_session, court_a(), CUSTOMER, "22500", NOW)
    assert r.payment_status == "pending"

def test_create_validates_input(test_db_session):
    with pytest.raises(InvalidRequest):
        create_reservation(test_db_session, court_a(duration=0), CUSTOMER, "100", NOW)
    with pytest.raises(InvalidRequest):
        create_reservation(test_db_session, court_a("08:00"), CUSTOMER, "100", NOW)
    with pytest.raises(InvalidRequest):
        create_reservation(test_db_session, court_a(), Customer("", "123"), "100", NOW)
    with pytest.raises(InvalidRequest):
        create_reservation(test_db_session, court_a(), CUSTOMER, "-5", NOW)
    with pytest.raises(InvalidRequest):
        create_reservation(test_db_session, court_a(), CUSTOMER, "lots", NOW)
    assert test_db_session.query(Reservation).count() == 0

def test_concurrent_creates_for_same_slot(session_factory):
    """Scenario: two customers hit 'book' for court A 14:00/90 at once."""
    results = []
    barrier = threading.Barrier(4)

    def book():
        db = session_factory()
        try:
            barrier.wait()
            r = create_reservation(db, court_a(), CUSTOMER, "22500", NOW)
            results.append(r.id)
        except SlotConflict:
            results.append("conflict")
        finally:
            db.close()

    threads = [threading.Thread(target=book) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [r for r in results if r != "conflict"]
    assert len(results) == 4
    assert len(winners) == 1

    db = session_factory()
    try:
        assert db.query(Reservation).count() == 1
    finally:
        db.close()

def test_transition_applies_once(test_db_session, make_reservation):
    rid = make_reservation()

    r = transition(test_db_session, rid, PaymentStatus.COMPLETED, NOW)
    assert r.payment_status == "completed"

    with pytest.raises(AlreadyFinalized) as exc:
        transition(test_db_session, rid, "completed", NOW)
    assert exc.value.current_status == "completed"

def test_terminal_states_never_change(test_db_session, make_reservation):
    completed = make_reservation(time="10:00", duration=60, status="completed")
    failed = make_reservation(time="12:00", duration=60, status="failed")

    for rid, status in ((completed, "completed"), (failed, "failed")):
        for target in ("completed", "failed"):
            with pytest.raises(AlreadyFinalized):
                transition(test_db_session, rid, target, NOW)
        assert test_db_session.get(Reservation, rid).payment_status == status

def test_transition_rejects_pending_target_and_unknown_ids(test_db_session, make_reservation):
    rid = make_reservation()
    with pytest.raises(InvalidRequest):
        transition(test_db_session, rid, "pending", NOW)
    with pytest.raises(InvalidRequest):
        transition(test_db_session, rid, "refunded", NOW)
    with pytest.raises(ReservationNotFound):
        transition(test_db_session, "nope", "completed", NOW)

def test_concurrent_transitions_have_one_winner(session_factory, make_reservation):
    rid = make_reservation()
    outcomes = []
    barrier = threading.Barrier(3)

    def finish(target):
        db = session_factory()
        try:
            barrier.wait()
            transition(db, rid, target, NOW)
            outcomes.append(("applied", target))
        except AlreadyFinalized as e:
            outcomes.append(("finalized", e.current_status))
        finally:
            db.close()

    threads = [threading.Thread(target=finish, args=(t,)) for t in ("completed", "failed", "completed")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    applied = [o for o in outcomes if o[0] == "applied"]
    assert len(applied) == 1
    winner = applied[0][1]
    assert all(o[1] == winner for o in outcomes if o[0] == "finalized")

def test_refund_only_after_completion(test_db_session, make_reservation):
    pending = make_reservation(time="10:00", duration=60)
    with pytest.raises(InvalidRequest):
        attach_refund(test_db_session, pending, "100", "lluvia", NOW)

    done = make_reservation(time="14:00", duration=90, status="completed", amount="22500.00")
    r = attach_refund(test_db_session, done, "10000", "lluvia", NOW)

    assert r.payment_status == "completed"
    assert r.refund_amount == Decimal("10000.00")
    assert r.refund_status == "processed"
    assert "Refund processed: $10000.00 - lluvia" in r.internal_notes

    with pytest.raises(AlreadyFinalized):
        attach_refund(test_db_session, done, "100", None, NOW)

def test_refund_amount_is_bounded(test_db_session, make_reservation):
    done = make_reservation(status="completed", amount="8000.00")
    with pytest.raises(InvalidRequest):
        attach_refund(test_db_session, done, "8000.01", None, NOW)
    with pytest.raises(InvalidRequest):
        attach_refund(test_db_session, done, "0", None, NOW)
    with pytest.raises(ReservationNotFound):
        attach_refund(test_db_session, "missing", "10", None, NOW)

def test_update_notes_and_listing(test_db_session, make_reservation):
    a = make_reservation(time="10:00", duration=60, status="completed")
    make_reservation(time="12:00", duration=60)
    make_reservation(time="12:00", duration=60, sport="tenis")

    update_notes(test_db_session, a, "Trae pelotas", NOW)

    assert test_db_session.get(Reservation, a).internal_notes == "Trae pelotas"
    assert len(list_reservations(test_db_session)) == 3
    assert [r.id for r in list_reservations(test_db_session, status=PaymentStatus.COMPLETED)] == [a]

def test_expire_stale_pending(test_db_session, make_reservation):
    stale = make_reservation(time="10:00", duration=60, created_at=NOW - timedelta(hours=3))
    fresh = make_reservation(time="12:00", duration=60, created_at=NOW - timedelta(minutes=10))
    done = make_reservation(time="14:00", duration=60, status="completed", created_at=NOW - timedelta(hours=3))

    expired = expire_stale_pending(test_db_session, timedelta(hours=1), NOW)

    assert expired == [stale]
    assert test_db_session.get(Reservation, stale).payment_status == "failed"
    assert test_db_session.get(Reservation, fresh).payment_status == "pending"
    assert test_db_session.get(Reservation, done).payment_status == "completed"

def test_rejected_request_takes_no_lock(test_db_session, make_reservation):
    make_reservation(time="18:00", duration=60)
    for bad in (court_a("08:00"), court_a("14:30"), court_a(duration=0)):
        with pytest.raises(InvalidRequest):
            create_reservation(test_db_session, bad, CUSTOMER, "100", NOW)
        assert not test_db_session.in_transaction()

def test_desk_booking_starts_completed(test_db_session):
    r = create_reservation(test_db_session, court_a(), CUSTOMER, "22500", NOW, status=PaymentStatus.COMPLETED)
    assert r.payment_status == "completed"

    with pytest.raises(SlotConflict):
        create_reservation(test_db_session, court_a("15:00", 60), CUSTOMER, "8000", NOW)
    with pytest.raises(AlreadyFinalized):
        transition(test_db_session, r.id, "failed", NOW)

def test_desk_booking_cannot_overlap_online_booking(test_db_session, make_reservation):
    make_reservation(time="14:00", duration=90)
    with pytest.raises(SlotConflict):
        create_reservation(test_db_session, court_a("14:00", 60), CUSTOMER, "8000", NOW, status="completed")
    assert test_db_session.query(Reservation).count() == 1

def test_booking_cannot_start_failed(test_db_session):
    with pytest.raises(InvalidRequest):
        create_reservation(test_db_session, court_a(), CUSTOMER, "100", NOW, status="failed")
    with pytest.raises(InvalidRequest):
        create_reservation(test_db_session, court_a(), CUSTOMER, "100", NOW, status="refunded")

def test_reservation_stats(test_db_session, make_reservation):
    assert reservation_stats(test_db_session) == {
        "total": 0, "pending": 0, "completed": 0, "failed": 0, "total_revenue": Decimal("0.00"),
    }

    make_reservation(time="10:00", duration=60, status="completed", amount="8000.00")
    make_reservation(time="12:00", duration=60, status="completed", amount="12500.50")
    make_reservation(time="14:00", duration=60, status="pending", amount="9000.00")
    make_reservation(time="16:00", duration=60, status="failed", amount="9000.00")

    stats = reservation_stats(test_db_session)
    assert stats == {
        "total": 4, "pending": 1, "completed": 2, "failed": 1, "total_revenue": Decimal("20500.50"),
    }
