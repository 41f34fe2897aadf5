"""Slot router - FastAPI endpoints for availability"""

import logging
from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...clock import get_clock
from ...database import get_db
from ...models import ConsultationType
from .schemas import AvailableSlotsResponse, SlotResponse
from .service import SlotService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Slots"])


def get_slot_service(db: Session = Depends(get_db), clock=Depends(get_clock)) -> SlotService:
    """Dependency injection for SlotService"""
    return SlotService(db, clock)


@router.get("/doctors/{doctor_id}/slots", response_model=AvailableSlotsResponse)
async def list_available_slots(
    doctor_id: int,
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    consultation_type: Optional[ConsultationType] = Query(None),
    service: SlotService = Depends(get_slot_service),
):
    """Bookable slots for a doctor; defaults to the next 7 days"""
    date_from = date_from or service.clock.now().date()
    date_to = date_to or date_from + timedelta(days=6)
    type_value = consultation_type.value if consultation_type else None

    slots = service.list_available(doctor_id, date_from, date_to, type_value)
    return AvailableSlotsResponse(
        doctor_id=doctor_id,
        date_from=date_from,
        date_to=date_to,
        consultation_type=type_value,
        slots=[SlotResponse.from_slot(s) for s in slots],
    )


@router.get("/slots/{slot_id}", response_model=SlotResponse)
async def get_slot(slot_id: int, service: SlotService = Depends(get_slot_service)):
    """Get a single slot with its current occupancy"""
    return SlotResponse.from_slot(service.get_slot(slot_id))
