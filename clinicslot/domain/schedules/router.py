"""Schedule router - FastAPI endpoints for weekly availability and overrides"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...clock import get_clock
from ...database import get_db
from .schemas import (
    OverrideCreate,
    OverrideResponse,
    ScheduleCreate,
    ScheduleResponse,
    ScheduleUpdate,
)
from .service import ScheduleService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/doctors/{doctor_id}", tags=["Schedules"])


def get_schedule_service(db: Session = Depends(get_db), clock=Depends(get_clock)) -> ScheduleService:
    """Dependency injection for ScheduleService"""
    return ScheduleService(db, clock)


# ============================================================================
# WEEKLY SCHEDULES
# ============================================================================


@router.get("/schedules", response_model=list[ScheduleResponse])
async def list_schedules(doctor_id: int, service: ScheduleService = Depends(get_schedule_service)):
    return service.list_schedules(doctor_id)


@router.post("/schedules", response_model=ScheduleResponse, status_code=201)
async def create_schedule(
    doctor_id: int,
    data: ScheduleCreate,
    service: ScheduleService = Depends(get_schedule_service),
):
    """Add a weekly window; future unbooked slots are regenerated"""
    return service.create_schedule(doctor_id, data)


@router.put("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(
    doctor_id: int,
    schedule_id: int,
    data: ScheduleUpdate,
    service: ScheduleService = Depends(get_schedule_service),
):
    return service.update_schedule(doctor_id, schedule_id, data)


@router.delete("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def deactivate_schedule(
    doctor_id: int,
    schedule_id: int,
    service: ScheduleService = Depends(get_schedule_service),
):
    """Schedules are deactivated, never deleted"""
    return service.deactivate_schedule(doctor_id, schedule_id)


# ============================================================================
# DATE OVERRIDES
# ============================================================================


@router.get("/overrides", response_model=list[OverrideResponse])
async def list_overrides(
    doctor_id: int,
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    service: ScheduleService = Depends(get_schedule_service),
):
    return service.list_overrides(doctor_id, date_from, date_to)


@router.post("/overrides", response_model=OverrideResponse, status_code=201)
async def create_override(
    doctor_id: int,
    data: OverrideCreate,
    service: ScheduleService = Depends(get_schedule_service),
):
    """Close a date (holiday/leave) or replace its hours (special_hours)"""
    return service.create_override(doctor_id, data)


@router.delete("/overrides/{override_id}")
async def delete_override(
    doctor_id: int,
    override_id: int,
    service: ScheduleService = Depends(get_schedule_service),
):
    return service.delete_override(doctor_id, override_id)
