import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


class ConsultationType(str, Enum):
    IN_PERSON = "in_person"
    ONLINE = "online"
    WALK_IN = "walk_in"


class OverrideType(str, Enum):
    HOLIDAY = "holiday"
    LEAVE = "leave"
    EMERGENCY = "emergency"
    SPECIAL_HOURS = "special_hours"


class ReservationStatus(str, Enum):
    HELD = "held"
    CONFIRMED = "confirmed"
    RELEASED = "released"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Doctor(Base):
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(String(36), unique=True, index=True, default=generate_public_id)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    specialization = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    # Defaults used when a schedule row does not carry its own values
    slot_duration_minutes = Column(Integer, default=15, nullable=False)
    max_patients_per_slot = Column(Integer, default=1, nullable=False)
    # Fee snapshot source, copied onto each appointment at booking time
    fee_in_person = Column(Numeric(10, 2), default=0, nullable=False)
    fee_online = Column(Numeric(10, 2), default=0, nullable=False)
    fee_walk_in = Column(Numeric(10, 2), default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    schedules = relationship(
        "WeeklySchedule", back_populates="doctor", cascade="all, delete-orphan"
    )
    overrides = relationship(
        "ScheduleOverride", back_populates="doctor", cascade="all, delete-orphan"
    )

    def fee_for(self, consultation_type: str):
        return {
            ConsultationType.ONLINE.value: self.fee_online,
            ConsultationType.WALK_IN.value: self.fee_walk_in,
        }.get(consultation_type, self.fee_in_person)


class WeeklySchedule(Base):
    __tablename__ = "doctor_schedules"

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)  # 0=Monday ... 6=Sunday
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    break_start = Column(Time, nullable=True)
    break_end = Column(Time, nullable=True)
    slot_duration_minutes = Column(Integer, nullable=True)  # Falls back to doctor default
    max_patients_per_slot = Column(Integer, nullable=True)  # Falls back to doctor default
    consultation_type = Column(String(20), default=ConsultationType.IN_PERSON.value, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    doctor = relationship("Doctor", back_populates="schedules")

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_schedule_day_of_week"),
    )


class ScheduleOverride(Base):
    __tablename__ = "schedule_overrides"

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    override_date = Column(Date, nullable=False)
    override_type = Column(String(20), nullable=False)  # holiday, leave, emergency, special_hours
    start_time = Column(Time, nullable=True)  # special_hours only
    end_time = Column(Time, nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    doctor = relationship("Doctor", back_populates="overrides")

    __table_args__ = (
        UniqueConstraint("doctor_id", "override_date", name="uq_override_doctor_date"),
    )


class Slot(Base):
    __tablename__ = "appointment_slots"

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    slot_date = Column(Date, nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    consultation_type = Column(String(20), default=ConsultationType.IN_PERSON.value, nullable=False)
    max_capacity = Column(Integer, default=1, nullable=False)
    current_occupancy = Column(Integer, default=0, nullable=False)
    # Lock mirror for capacity-1 slots; capacity > 1 relies on reservation rows only
    locked_by = Column(String(64), nullable=True)
    locked_until = Column(DateTime, nullable=True)
    is_blocked = Column(Boolean, default=False, nullable=False)
    block_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    doctor = relationship("Doctor")
    reservations = relationship("SlotReservation", back_populates="slot")

    __table_args__ = (
        UniqueConstraint(
            "doctor_id", "start_time", "consultation_type", name="uq_slot_doctor_start_type"
        ),
        CheckConstraint(
            "current_occupancy >= 0 AND current_occupancy <= max_capacity",
            name="ck_slot_occupancy_bounds",
        ),
    )


class SlotReservation(Base):
    """One unit of claimed slot capacity"""

    __tablename__ = "slot_reservations"

    id = Column(Integer, primary_key=True, index=True)
    slot_id = Column(Integer, ForeignKey("appointment_slots.id"), nullable=False, index=True)
    holder_token = Column(String(64), unique=True, nullable=False, index=True)
    status = Column(String(20), default=ReservationStatus.HELD.value, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)
    release_reason = Column(String(255), nullable=True)

    slot = relationship("Slot", back_populates="reservations")


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(String(36), unique=True, index=True, default=generate_public_id)
    booking_id = Column(String(20), unique=True, index=True, nullable=False)
    patient_id = Column(String(64), nullable=False, index=True)
    patient_name = Column(String(255), nullable=True)
    patient_email = Column(String(255), nullable=True)
    patient_phone = Column(String(20), nullable=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    slot_id = Column(Integer, ForeignKey("appointment_slots.id"), nullable=False, index=True)
    reservation_token = Column(String(64), nullable=False, index=True)
    consultation_type = Column(String(20), nullable=False)
    scheduled_start = Column(DateTime, nullable=False, index=True)
    scheduled_end = Column(DateTime, nullable=False)
    # pending_payment, confirmed, cancelled, completed, no_show
    status = Column(String(20), nullable=False, index=True)
    consultation_fee = Column(Numeric(10, 2), nullable=False, default=0)
    platform_fee = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    created_at = Column(DateTime, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(20), nullable=True)  # patient, doctor, hospital, admin, system
    cancelled_by_id = Column(String(64), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    consultation_started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    no_show_at = Column(DateTime, nullable=True)
    rescheduled_from_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    rescheduled_to_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    reminder_sent = Column(Boolean, default=False, nullable=False)

    doctor = relationship("Doctor")
    slot = relationship("Slot")
    payments = relationship("Payment", back_populates="appointment")
    refunds = relationship("RefundRecord", back_populates="appointment")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    order_ref = Column(String(255), unique=True, nullable=False, index=True)
    gateway_payment_id = Column(String(255), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    platform_fee = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    checkout_url = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    last_polled_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)

    appointment = relationship("Appointment", back_populates="payments")


class RefundRecord(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, index=True)
    # full, partial_75, partial_50, none, doctor_cancelled, technical_failure
    refund_type = Column(String(30), nullable=False)
    percentage = Column(Integer, nullable=False)
    original_amount = Column(Numeric(10, 2), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    platform_fee_refund = Column(Numeric(10, 2), nullable=False, default=0)
    cancelled_by = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String(20), default=RefundStatus.PENDING.value, nullable=False, index=True)
    gateway_refund_id = Column(String(255), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    appointment = relationship("Appointment", back_populates="refunds")
    payment = relationship("Payment")


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_keys"

    id = Column(Integer, primary_key=True, index=True)
    scope = Column(String(50), nullable=False)  # book, cancel, reschedule
    key = Column(String(255), nullable=False)
    actor_id = Column(String(64), nullable=False)
    status = Column(String(20), default="processing", nullable=False)  # processing, completed
    response = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("scope", "key", "actor_id", name="uq_idempotency_scope_key_actor"),
    )
