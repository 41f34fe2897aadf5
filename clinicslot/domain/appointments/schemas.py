"""Appointment domain schemas - role-scoped request and response models"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ...shared.validators import validate_e164_phone, validate_email
from ..refunds.policy import CancellationActor


class RequestRole(str, Enum):
    """Roles a caller may act as; system actions come only from background jobs"""

    PATIENT = CancellationActor.PATIENT.value
    DOCTOR = CancellationActor.DOCTOR.value
    HOSPITAL = CancellationActor.HOSPITAL.value
    ADMIN = CancellationActor.ADMIN.value


class Actor(BaseModel):
    """Who is acting on an appointment"""

    role: CancellationActor
    actor_id: str = Field(..., min_length=1, max_length=64)

    @field_validator("role")
    @classmethod
    def check_role(cls, v):
        if v == CancellationActor.SYSTEM:
            raise ValueError("role 'system' cannot be used in a request")
        return v


class PatientInfo(BaseModel):
    patient_id: str = Field(..., min_length=1, max_length=64)
    name: Optional[str] = Field(None, max_length=255)
    email: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, v):
        return validate_email(v)

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v):
        return validate_e164_phone(v)


class BookSlotRequest(BaseModel):
    doctor_id: int
    slot_id: int
    patient: PatientInfo


class CancelRequest(BaseModel):
    actor: Actor
    reason: Optional[str] = Field(None, max_length=500)


class RescheduleRequest(BaseModel):
    actor: Actor
    new_slot_id: int


class ActorRequest(BaseModel):
    actor: Actor


class AppointmentResponse(BaseModel):
    id: int
    public_id: Optional[str] = None
    booking_id: str
    patient_id: str
    doctor_id: int
    slot_id: int
    consultation_type: str
    scheduled_start: datetime
    scheduled_end: datetime
    status: str
    consultation_fee: Decimal
    platform_fee: Decimal
    total_amount: Decimal
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    consultation_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None
    rescheduled_from_id: Optional[int] = None
    rescheduled_to_id: Optional[int] = None

    class Config:
        from_attributes = True


class RefundResponse(BaseModel):
    id: int
    refund_type: str
    percentage: int
    original_amount: Decimal
    amount: Decimal
    platform_fee_refund: Decimal
    status: str
    cancelled_by: str
    reason: Optional[str] = None

    class Config:
        from_attributes = True


class BookingResponse(BaseModel):
    appointment_id: int
    booking_id: str
    status: str
    payment_reference: Optional[str] = None
    checkout_url: Optional[str] = None
    reservation_expires_at: Optional[datetime] = None
    total_amount: Decimal
    replayed: bool = False


class CancellationResponse(BaseModel):
    appointment: AppointmentResponse
    refund: Optional[RefundResponse] = None
    replayed: bool = False


class RescheduleResponse(BaseModel):
    appointment_id: int
    previous_appointment_id: int
    appointment: AppointmentResponse
    replayed: bool = False
