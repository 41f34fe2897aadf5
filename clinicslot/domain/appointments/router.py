"""Appointment router - booking, cancellation and reschedule endpoints"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.orm import Session

from ...clock import get_clock
from ...database import get_db
from ...rate_limiter import create_rate_limiter
from ...services.notification_service import get_notification_service
from ..payments.dodo_service import get_payment_service
from ..refunds.policy import CancellationActor
from .schemas import (
    Actor,
    ActorRequest,
    AppointmentResponse,
    BookingResponse,
    BookSlotRequest,
    CancellationResponse,
    CancelRequest,
    RefundResponse,
    RescheduleRequest,
    RequestRole,
    RescheduleResponse,
)
from .service import AppointmentService, BookingResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])

booking_rate_limiter = create_rate_limiter(limit=30, window_seconds=60, key_prefix="appointments_write")


def actor_from_query(
    role: RequestRole = Query(...),
    actor_id: str = Query(..., min_length=1, max_length=64),
) -> Actor:
    """Caller identity for read endpoints"""
    return Actor(role=CancellationActor(role.value), actor_id=actor_id)


def get_appointment_service(
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    payments=Depends(get_payment_service),
    notifier=Depends(get_notification_service),
) -> AppointmentService:
    """Dependency injection for AppointmentService"""
    return AppointmentService(db, clock, payments=payments, notifier=notifier)


def idempotency_key_header(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    x_idempotency_key: Optional[str] = Header(None, alias="X-Idempotency-Key"),
) -> Optional[str]:
    return idempotency_key or x_idempotency_key


def _booking_response(result: BookingResult) -> BookingResponse:
    appointment = result.appointment
    payment = result.payment
    return BookingResponse(
        appointment_id=appointment.id,
        booking_id=appointment.booking_id,
        status=appointment.status,
        payment_reference=payment.order_ref if payment else None,
        checkout_url=payment.checkout_url if payment else None,
        reservation_expires_at=result.reservation_expires_at,
        total_amount=appointment.total_amount,
        replayed=result.replayed,
    )


@router.post("", response_model=BookingResponse, status_code=201)
async def book_slot(
    data: BookSlotRequest,
    idempotency_key: Optional[str] = Depends(idempotency_key_header),
    service: AppointmentService = Depends(get_appointment_service),
    _: None = Depends(booking_rate_limiter),
):
    """Hold a slot and open a payment order for it"""
    result = await service.book_slot(data.doctor_id, data.slot_id, data.patient, idempotency_key)
    return _booking_response(result)


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: int,
    actor: Actor = Depends(actor_from_query),
    service: AppointmentService = Depends(get_appointment_service),
):
    return service.get_appointment(appointment_id, actor)


@router.get("/{appointment_id}/refunds", response_model=list[RefundResponse])
async def list_refunds(
    appointment_id: int,
    actor: Actor = Depends(actor_from_query),
    service: AppointmentService = Depends(get_appointment_service),
):
    service.get_appointment(appointment_id, actor)
    return service.get_refunds(appointment_id)


@router.post("/{appointment_id}/retry-payment", response_model=BookingResponse)
async def retry_payment(
    appointment_id: int,
    data: ActorRequest,
    service: AppointmentService = Depends(get_appointment_service),
    _: None = Depends(booking_rate_limiter),
):
    """New payment order for a pending appointment whose hold is still live"""
    return _booking_response(await service.retry_payment(appointment_id, data.actor))


@router.post("/{appointment_id}/cancel", response_model=CancellationResponse)
async def cancel_appointment(
    appointment_id: int,
    data: CancelRequest,
    idempotency_key: Optional[str] = Depends(idempotency_key_header),
    service: AppointmentService = Depends(get_appointment_service),
    _: None = Depends(booking_rate_limiter),
):
    """Cancel and return the computed refund outcome"""
    result = await service.cancel_appointment(appointment_id, data.actor, data.reason, idempotency_key)
    return CancellationResponse(
        appointment=AppointmentResponse.model_validate(result.appointment),
        refund=RefundResponse.model_validate(result.refund) if result.refund else None,
        replayed=result.replayed,
    )


@router.post("/{appointment_id}/reschedule", response_model=RescheduleResponse)
async def reschedule_appointment(
    appointment_id: int,
    data: RescheduleRequest,
    idempotency_key: Optional[str] = Depends(idempotency_key_header),
    service: AppointmentService = Depends(get_appointment_service),
    _: None = Depends(booking_rate_limiter),
):
    result = await service.reschedule_appointment(
        appointment_id, data.new_slot_id, data.actor, idempotency_key
    )
    return RescheduleResponse(
        appointment_id=result.appointment.id,
        previous_appointment_id=result.previous.id,
        appointment=AppointmentResponse.model_validate(result.appointment),
        replayed=result.replayed,
    )


@router.post("/{appointment_id}/start", response_model=AppointmentResponse)
async def start_consultation(
    appointment_id: int,
    data: ActorRequest,
    service: AppointmentService = Depends(get_appointment_service),
):
    return service.start_consultation(appointment_id, data.actor)


@router.post("/{appointment_id}/complete", response_model=AppointmentResponse)
async def complete_appointment(
    appointment_id: int,
    data: ActorRequest,
    service: AppointmentService = Depends(get_appointment_service),
):
    return service.complete_appointment(appointment_id, data.actor)
