"""Tests for slot capacity reservations under contention."""

import random
import threading
from datetime import timedelta

import pytest

from clinicslot.domain.reservations.manager import OK, SLOT_FULL, SLOT_LOCKED, ReservationManager
from clinicslot.errors import NotFoundError, SlotFull
from clinicslot.models import ReservationStatus, Slot, SlotReservation

TTL = timedelta(minutes=30)


def reload_slot(db, slot_id) -> Slot:
    return db.query(Slot).filter(Slot.id == slot_id).populate_existing().one()


def race(session_factory, clock, slot_id, count) -> list[str]:
    """Run ``count`` reserve calls on separate sessions and threads at once."""
    barrier = threading.Barrier(count)
    outcomes: list[str] = []
    lock = threading.Lock()

    def worker(index):
        session = session_factory()
        try:
            barrier.wait()
            result = ReservationManager(session, clock).reserve(slot_id, f"holder-{index}", TTL)
            if result.ok:
                session.commit()
            else:
                session.rollback()
            with lock:
                outcomes.append(result.outcome)
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


@pytest.fixture
def shared_slot(db, slots) -> Slot:
    """10:00 slot widened to capacity 3."""
    slot = slots[2]
    slot.max_capacity = 3
    db.commit()
    return slot


class TestReserve:
    def test_reserve_counts_occupancy_and_mirrors_lock(self, db, clock, slots) -> None:
        manager = ReservationManager(db, clock)
        result = manager.reserve(slots[0].id, "holder-a", TTL)
        db.commit()

        assert result.ok
        assert result.expires_at == clock.now() + TTL
        slot = reload_slot(db, slots[0].id)
        assert slot.current_occupancy == 1
        assert slot.locked_by == "holder-a"
        assert slot.locked_until == clock.now() + TTL

    def test_second_holder_gets_slot_full(self, db, clock, slots) -> None:
        manager = ReservationManager(db, clock)
        manager.reserve(slots[0].id, "holder-a", TTL)
        db.commit()

        result = manager.reserve(slots[0].id, "holder-b", TTL)

        assert result.outcome == SLOT_FULL
        with pytest.raises(SlotFull):
            result.raise_for_outcome()

    def test_live_foreign_lock_reports_locked(self, db, clock, shared_slot) -> None:
        """A capacity-1 style lock left on a slot with room is transient contention."""
        shared_slot.locked_by = "someone-else"
        shared_slot.locked_until = clock.now() + timedelta(seconds=30)
        db.commit()

        result = ReservationManager(db, clock).reserve(shared_slot.id, "holder-a", TTL)

        assert result.outcome == SLOT_LOCKED

    def test_elapsed_lock_does_not_block(self, db, clock, shared_slot) -> None:
        shared_slot.locked_by = "someone-else"
        shared_slot.locked_until = clock.now() - timedelta(seconds=1)
        db.commit()

        assert ReservationManager(db, clock).reserve(shared_slot.id, "holder-a", TTL).ok

    def test_blocked_slot_is_not_reservable(self, db, clock, slots) -> None:
        slots[1].is_blocked = True
        slots[1].block_reason = "schedule_removed"
        db.commit()

        assert ReservationManager(db, clock).reserve(slots[1].id, "holder-a", TTL).outcome == SLOT_FULL

    def test_unknown_slot(self, db, clock, slots) -> None:
        with pytest.raises(NotFoundError):
            ReservationManager(db, clock).reserve(999_999, "holder-a", TTL)

    def test_capacity_above_one_does_not_lock_row(self, db, clock, shared_slot) -> None:
        manager = ReservationManager(db, clock)
        for holder in ("a", "b", "c"):
            assert manager.reserve(shared_slot.id, holder, TTL).ok
        db.commit()

        slot = reload_slot(db, shared_slot.id)
        assert slot.current_occupancy == 3
        assert slot.locked_by is None
        assert manager.reserve(shared_slot.id, "d", TTL).outcome == SLOT_FULL


class TestConcurrentReserve:
    """Capacity is never exceeded by racing callers."""

    def test_capacity_plus_one_gives_exactly_one_full(self, db, session_factory, clock, shared_slot) -> None:
        outcomes = race(session_factory, clock, shared_slot.id, 4)

        assert outcomes.count(OK) == 3
        assert outcomes.count(SLOT_FULL) == 1
        assert reload_slot(db, shared_slot.id).current_occupancy == 3

    def test_capacity_one_race(self, db, session_factory, clock, slots) -> None:
        outcomes = race(session_factory, clock, slots[0].id, 2)

        assert sorted(outcomes) == [OK, SLOT_FULL]
        assert reload_slot(db, slots[0].id).current_occupancy == 1

    def test_interleaved_reserve_and_release_stay_within_bounds(
        self, db, session_factory, clock, shared_slot
    ) -> None:
        slot_id = shared_slot.id
        rng = random.Random(42)
        plan = [[rng.random() < 0.6 for _ in range(15)] for _ in range(6)]
        errors: list[str] = []

        def worker(index, steps):
            session = session_factory()
            manager = ReservationManager(session, clock)
            held: list[str] = []
            try:
                for step, want_reserve in enumerate(steps):
                    if want_reserve or not held:
                        token = f"w{index}-{step}"
                        if manager.reserve(slot_id, token, TTL).ok:
                            held.append(token)
                            session.commit()
                        else:
                            session.rollback()
                    else:
                        manager.release(slot_id, held.pop(), reason="test")
                        session.commit()

                    slot = reload_slot(session, slot_id)
                    if not 0 <= slot.current_occupancy <= slot.max_capacity:
                        errors.append(f"occupancy {slot.current_occupancy}")
                    session.commit()
            finally:
                session.close()

        threads = [threading.Thread(target=worker, args=(i, steps)) for i, steps in enumerate(plan)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        slot = reload_slot(db, shared_slot.id)
        live = (
            db.query(SlotReservation)
            .filter(
                SlotReservation.slot_id == shared_slot.id,
                SlotReservation.status != ReservationStatus.RELEASED.value,
            )
            .count()
        )
        assert slot.current_occupancy == live <= slot.max_capacity


class TestConfirmAndRelease:
    def test_confirm_twice_equals_once(self, db, clock, slots) -> None:
        manager = ReservationManager(db, clock)
        manager.reserve(slots[0].id, "holder-a", TTL)

        assert manager.confirm(slots[0].id, "holder-a")
        assert manager.confirm(slots[0].id, "holder-a")
        db.commit()

        slot = reload_slot(db, slots[0].id)
        assert slot.current_occupancy == 1
        assert slot.locked_by is None
        assert manager.get_reservation("holder-a").status == ReservationStatus.CONFIRMED.value

    def test_confirm_unknown_token(self, db, clock, slots) -> None:
        assert not ReservationManager(db, clock).confirm(slots[0].id, "nobody")

    def test_release_then_reserve_by_other_holder(self, db, clock, slots) -> None:
        manager = ReservationManager(db, clock)
        manager.reserve(slots[0].id, "holder-a", TTL)
        db.commit()

        assert manager.release(slots[0].id, "holder-a")
        db.commit()

        assert manager.reserve(slots[0].id, "holder-b", TTL).ok
        db.commit()
        slot = reload_slot(db, slots[0].id)
        assert slot.current_occupancy == 1
        assert slot.locked_by == "holder-b"

    def test_release_is_idempotent_and_ignores_foreign_tokens(self, db, clock, slots) -> None:
        manager = ReservationManager(db, clock)
        manager.reserve(slots[0].id, "holder-a", TTL)

        assert not manager.release(slots[0].id, "stranger")
        assert manager.release(slots[0].id, "holder-a")
        assert not manager.release(slots[0].id, "holder-a")
        db.commit()

        assert reload_slot(db, slots[0].id).current_occupancy == 0

    def test_release_of_confirmed_frees_capacity(self, db, clock, slots) -> None:
        manager = ReservationManager(db, clock)
        manager.reserve(slots[0].id, "holder-a", TTL)
        manager.confirm(slots[0].id, "holder-a")

        assert manager.release(slots[0].id, "holder-a", reason="cancelled")
        db.commit()

        assert reload_slot(db, slots[0].id).current_occupancy == 0
        reservation = manager.get_reservation("holder-a")
        assert reservation.release_reason == "cancelled"

    def test_find_expired(self, db, clock, slots) -> None:
        manager = ReservationManager(db, clock)
        manager.reserve(slots[0].id, "old", timedelta(minutes=5))
        manager.reserve(slots[1].id, "fresh", TTL)
        db.commit()

        clock.advance(minutes=10)

        assert [r.holder_token for r in manager.find_expired()] == ["old"]
