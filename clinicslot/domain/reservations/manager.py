"""
Reservation manager - claims and frees units of slot capacity.

Every capacity mutation is one conditional UPDATE against the store, so two
service instances can never push a slot past its capacity. Methods flush into
the caller's transaction and never commit; the calling service owns the
transaction boundary.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, null, or_, text, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ...config import RESERVATION_LOCK_TIMEOUT_MS
from ...errors import NotFoundError, SlotFull, SlotLocked
from ...models import ReservationStatus, Slot, SlotReservation

logger = logging.getLogger(__name__)

OK = "ok"
SLOT_FULL = "slot_full"
SLOT_LOCKED = "slot_locked"


@dataclass(frozen=True)
class ReservationResult:
    outcome: str
    slot_id: int
    holder_token: str
    expires_at: Optional[datetime] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == OK

    def raise_for_outcome(self) -> None:
        """Turn a failed reservation into the matching booking error"""
        if self.outcome == SLOT_FULL:
            raise SlotFull(self.detail or "Slot is fully booked", slot_id=self.slot_id)
        if self.outcome == SLOT_LOCKED:
            raise SlotLocked(
                self.detail or "Slot is being booked by someone else, retry shortly",
                slot_id=self.slot_id,
                retry_after=SlotLocked.retry_after_seconds,
            )


class ReservationManager:
    """Counted-semaphore reservations on appointment slots"""

    def __init__(self, db: Session, clock):
        self.db = db
        self.clock = clock

    def reserve(self, slot_id: int, holder_token: str, ttl: timedelta) -> ReservationResult:
        """
        Claim one unit of capacity on a slot until ``now + ttl``.

        Returns a ``slot_locked`` result when the store reports row-lock
        contention; the caller must roll back its transaction in that case.
        """
        now = self.clock.now()
        expires_at = now + ttl

        try:
            self._apply_lock_timeout()
            result = self.db.execute(
                update(Slot)
                .where(
                    Slot.id == slot_id,
                    Slot.is_blocked.is_(False),
                    Slot.current_occupancy < Slot.max_capacity,
                    or_(Slot.locked_by.is_(None), Slot.locked_until <= now),
                )
                .values(
                    current_occupancy=Slot.current_occupancy + 1,
                    # Capacity-1 slots mirror the hold on the row itself
                    locked_by=case((Slot.max_capacity == 1, holder_token), else_=Slot.locked_by),
                    locked_until=case((Slot.max_capacity == 1, expires_at), else_=Slot.locked_until),
                )
                .execution_options(synchronize_session=False)
            )
        except OperationalError as e:
            logger.warning(f"🔒 Slot {slot_id} row lock contention for {holder_token}: {e.orig}")
            return ReservationResult(SLOT_LOCKED, slot_id, holder_token)

        if result.rowcount == 0:
            return self._diagnose_rejection(slot_id, holder_token, now)

        self.db.add(
            SlotReservation(
                slot_id=slot_id,
                holder_token=holder_token,
                status=ReservationStatus.HELD.value,
                expires_at=expires_at,
                created_at=now,
            )
        )
        self.db.flush()

        logger.info(f"✅ Reserved slot {slot_id} for {holder_token} until {expires_at}")
        return ReservationResult(OK, slot_id, holder_token, expires_at=expires_at)

    def confirm(self, slot_id: int, holder_token: str) -> bool:
        """
        Turn a live hold into permanent occupancy.

        Occupancy was already counted at reserve time, so only the hold state and
        the row lock change. Confirming twice is a no-op. Returns False when the
        reservation is unknown or already released.
        """
        now = self.clock.now()
        result = self.db.execute(
            update(SlotReservation)
            .where(
                SlotReservation.slot_id == slot_id,
                SlotReservation.holder_token == holder_token,
                SlotReservation.status == ReservationStatus.HELD.value,
            )
            .values(status=ReservationStatus.CONFIRMED.value, confirmed_at=now)
            .execution_options(synchronize_session=False)
        )
        self._clear_lock(slot_id, holder_token)

        if result.rowcount == 1:
            logger.info(f"✅ Confirmed reservation {holder_token} on slot {slot_id}")
            return True

        status = self._reservation_status(slot_id, holder_token)
        if status == ReservationStatus.CONFIRMED.value:
            logger.debug(f"🔄 Reservation {holder_token} already confirmed")
            return True

        logger.warning(f"⚠️ Cannot confirm reservation {holder_token} on slot {slot_id}: {status}")
        return False

    def release(self, slot_id: int, holder_token: str, reason: str = "released") -> bool:
        """
        Give a unit of capacity back.

        Only the call that flips the reservation to ``released`` decrements
        occupancy, which makes release idempotent and a no-op for foreign tokens.
        """
        now = self.clock.now()
        result = self.db.execute(
            update(SlotReservation)
            .where(
                SlotReservation.slot_id == slot_id,
                SlotReservation.holder_token == holder_token,
                SlotReservation.status.in_(
                    [ReservationStatus.HELD.value, ReservationStatus.CONFIRMED.value]
                ),
            )
            .values(
                status=ReservationStatus.RELEASED.value,
                released_at=now,
                release_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.debug(f"Release of {holder_token} on slot {slot_id} was a no-op")
            return False

        self.db.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.current_occupancy > 0)
            .values(
                current_occupancy=Slot.current_occupancy - 1,
                locked_by=case((Slot.locked_by == holder_token, null()), else_=Slot.locked_by),
                locked_until=case(
                    (Slot.locked_by == holder_token, null()), else_=Slot.locked_until
                ),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.flush()

        logger.info(f"🔓 Released {holder_token} on slot {slot_id} ({reason})")
        return True

    def find_expired(self, limit: int = 100) -> list[SlotReservation]:
        """Held reservations whose payment window has elapsed, oldest first"""
        now = self.clock.now()
        return (
            self.db.query(SlotReservation)
            .filter(
                SlotReservation.status == ReservationStatus.HELD.value,
                SlotReservation.expires_at <= now,
            )
            .order_by(SlotReservation.expires_at.asc(), SlotReservation.id.asc())
            .limit(limit)
            .all()
        )

    def get_reservation(self, holder_token: str) -> Optional[SlotReservation]:
        return (
            self.db.query(SlotReservation)
            .filter(SlotReservation.holder_token == holder_token)
            .populate_existing()
            .first()
        )

    def _apply_lock_timeout(self) -> None:
        # Bounded wait on Postgres row locks; sqlite relies on its busy timeout
        if self.db.get_bind().dialect.name == "postgresql":
            self.db.execute(text(f"SET LOCAL lock_timeout = '{int(RESERVATION_LOCK_TIMEOUT_MS)}ms'"))

    def _clear_lock(self, slot_id: int, holder_token: str) -> None:
        self.db.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.locked_by == holder_token)
            .values(locked_by=None, locked_until=None)
            .execution_options(synchronize_session=False)
        )

    def _reservation_status(self, slot_id: int, holder_token: str) -> Optional[str]:
        row = (
            self.db.query(SlotReservation.status)
            .filter(
                SlotReservation.slot_id == slot_id,
                SlotReservation.holder_token == holder_token,
            )
            .first()
        )
        return row[0] if row else None

    def _diagnose_rejection(self, slot_id: int, holder_token: str, now: datetime) -> ReservationResult:
        slot = self.db.query(Slot).filter(Slot.id == slot_id).populate_existing().first()
        if slot is None:
            raise NotFoundError("Slot not found", slot_id=slot_id)

        if slot.is_blocked:
            logger.info(f"🚫 Slot {slot_id} is blocked ({slot.block_reason})")
            return ReservationResult(SLOT_FULL, slot_id, holder_token, detail="Slot is not available")

        if (
            slot.current_occupancy < slot.max_capacity
            and slot.locked_by is not None
            and slot.locked_until is not None
            and slot.locked_until > now
        ):
            logger.info(f"🔒 Slot {slot_id} locked by {slot.locked_by} until {slot.locked_until}")
            return ReservationResult(SLOT_LOCKED, slot_id, holder_token)

        logger.info(
            f"🚫 Slot {slot_id} full ({slot.current_occupancy}/{slot.max_capacity}) for {holder_token}"
        )
        return ReservationResult(SLOT_FULL, slot_id, holder_token)
