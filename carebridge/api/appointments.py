from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.exc import IntegrityError
from sqlalchemy import and_, or_, func
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime, date, timedelta
import logging

from .. import config
from ..database.connection import get_db
from ..database.models import (
    User, Appointment, UserRole, AppointmentStatus,
    APPOINTMENT_TRANSITIONS, APPOINTMENT_WAITING_STATUSES, APPOINTMENT_TERMINAL_STATUSES,
)
from ..realtime import manager, hospital_channel, patient_channel
from ..schemas import AppointmentOut, AppointmentStatusName, HHMM_PATTERN
from .auth import get_current_user, require_roles, ensure_hospital_member
from .audit import log_action
from .doctors import get_doctor_or_404, parse_hhmm, format_hhmm, find_window, overlaps, held_ranges

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["Appointments"])

CANCELLABLE_STATUSES = [AppointmentStatus.SCHEDULED.value, AppointmentStatus.IN_QUEUE.value]

# ==================== PYDANTIC MODELS (Request/Response) ====================

class AppointmentBookRequest(BaseModel):
    doctor_id: int
    date: date
    start_time: str = Field(..., pattern=HHMM_PATTERN, description="HH:MM, 24h")
    reason: Optional[str] = Field(None, max_length=500)
    symptoms: Optional[str] = Field(None, max_length=2000)


class UpdateStatusRequest(BaseModel):
    status: AppointmentStatusName
    notes: Optional[str] = None
    prescription: Optional[str] = None
    follow_up_date: Optional[date] = None

# ==================== HELPER FUNCTIONS ====================

def appointment_start(appointment: Appointment) -> datetime:
    return datetime.combine(appointment.date, appointment.start_time)


def consultation_minutes(appointment: Appointment) -> int:
    profile = appointment.doctor_profile
    return (profile.avg_consultation_time if profile else None) or config.DEFAULT_CONSULTATION_MINUTES


def estimate_wait(db: Session, appointment: Appointment) -> Optional[int]:
    """
    Minutes until this appointment is reached: appointments of the same doctor
    and day still scheduled/queued with a lower queue number, times the
    doctor's average consultation time. Recomputed on every read.
    """
    if appointment.status in APPOINTMENT_TERMINAL_STATUSES:
        return None
    if appointment.status == AppointmentStatus.IN_PROGRESS.value:
        return 0

    ahead = db.query(func.count(Appointment.id)).filter(
        and_(
            Appointment.doctor_id == appointment.doctor_id,
            Appointment.date == appointment.date,
            Appointment.status.in_(APPOINTMENT_WAITING_STATUSES),
            Appointment.queue_number < appointment.queue_number
        )
    ).scalar()
    return ahead * consultation_minutes(appointment)


def serialize_appointment(db: Session, appointment: Appointment) -> dict:
    return {
        "id": appointment.id,
        "patient_id": appointment.patient_id,
        "patient_name": appointment.patient.full_name,
        "doctor_id": appointment.doctor_id,
        "doctor_name": appointment.doctor.full_name,
        "hospital_id": appointment.hospital_id,
        "date": appointment.date,
        "start_time": format_hhmm(appointment.start_time),
        "end_time": format_hhmm(appointment.end_time),
        "status": appointment.status,
        "queue_number": appointment.queue_number,
        "estimated_wait_time": estimate_wait(db, appointment),
        "actual_wait_time": appointment.actual_wait_time,
        "reason": appointment.reason,
        "symptoms": appointment.symptoms,
        "notes": appointment.notes,
        "prescription": appointment.prescription,
        "follow_up_date": appointment.follow_up_date,
        "cancellation_reason": appointment.cancellation_reason,
        "cancelled_at": appointment.cancelled_at,
    }


def appointment_query(db: Session):
    return db.query(Appointment).options(
        joinedload(Appointment.patient),
        joinedload(Appointment.doctor),
        joinedload(Appointment.doctor_profile)
    )


def get_appointment_or_404(db: Session, appointment_id: int) -> Appointment:
    appointment = appointment_query(db).filter(Appointment.id == appointment_id).first()
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return appointment


def ensure_can_view(user: User, appointment: Appointment) -> None:
    if user.role == UserRole.PATIENT.value and appointment.patient_id == user.id:
        return
    if user.role == UserRole.DOCTOR.value and appointment.doctor_id == user.id:
        return
    if user.role == UserRole.STAFF.value and appointment.hospital_id is not None \
            and user.hospital_id == appointment.hospital_id:
        return
    raise HTTPException(status_code=403, detail="Not authorized to access this appointment")


def appointment_channels(appointment: Appointment) -> List[str]:
    channels = [patient_channel(appointment.patient_id)]
    if appointment.hospital_id is not None:
        channels.insert(0, hospital_channel(appointment.hospital_id))
    return channels


def guarded_update(db: Session, appointment: Appointment, allowed_from: List[str], values: dict) -> None:
    """
    Single conditional UPDATE: applies only while the row is still in one of
    `allowed_from`. A concurrent transition in between yields 409.
    """
    rows = db.query(Appointment).filter(
        and_(
            Appointment.id == appointment.id,
            Appointment.status.in_(allowed_from)
        )
    ).update(values, synchronize_session=False)

    if rows == 0:
        db.rollback()
        raise HTTPException(status_code=409, detail="Appointment was modified concurrently, please retry")

# ==================== API ENDPOINTS ====================

@router.post("", response_model=AppointmentOut, status_code=201)
async def book_appointment(
    request: AppointmentBookRequest,
    current_user: User = Depends(require_roles(UserRole.PATIENT.value)),
    db: Session = Depends(get_db)
):
    """
    Book an appointment with a doctor.

    The start time must be in the future and a full consultation must fit
    inside one of the doctor's availability windows for that weekday.
    """
    doctor = get_doctor_or_404(db, request.doctor_id)
    profile = doctor.doctor_profile

    start = parse_hhmm(request.start_time)
    begin = datetime.combine(request.date, start)
    if begin <= datetime.now():
        raise HTTPException(status_code=400, detail="Cannot book appointments in the past")

    if find_window(profile, request.date, start) is None:
        raise HTTPException(status_code=400, detail="Doctor is not available at the requested time")

    slot_key = f"{doctor.id}:{request.date.isoformat()}:{request.start_time}"
    if db.query(Appointment.id).filter(Appointment.slot_key == slot_key).first():
        raise HTTPException(status_code=409, detail="This time slot is already booked. Please choose another slot.")

    duration = timedelta(minutes=profile.avg_consultation_time or config.DEFAULT_CONSULTATION_MINUTES)
    # Held ranges can be off the current grid after the consultation length changed
    if overlaps(request.date, begin, begin + duration, held_ranges(db, doctor.id, request.date)):
        raise HTTPException(status_code=409, detail="This time overlaps another appointment. Please choose another slot.")

    last_number = db.query(func.max(Appointment.queue_number)).filter(
        and_(Appointment.doctor_id == doctor.id, Appointment.date == request.date)
    ).scalar()

    appointment = Appointment(
        patient_id=current_user.id,
        doctor_id=doctor.id,
        doctor_profile_id=profile.id,
        hospital_id=doctor.hospital_id,
        date=request.date,
        start_time=start,
        end_time=(begin + duration).time(),
        status=AppointmentStatus.SCHEDULED.value,
        queue_number=(last_number or 0) + 1,
        slot_key=slot_key,
        reason=request.reason,
        symptoms=request.symptoms,
    )
    db.add(appointment)

    try:
        db.flush()
        log_action(
            db=db,
            user_id=current_user.id,
            action="APPOINTMENT_BOOKED",
            entity_type="appointment",
            entity_id=appointment.id,
            details={
                "doctor_id": doctor.id,
                "date": str(request.date),
                "time": request.start_time,
                "queue_number": appointment.queue_number
            }
        )
        db.commit()
    except IntegrityError:
        # slot_key or (doctor, date, queue_number) taken by a concurrent booking
        db.rollback()
        raise HTTPException(status_code=409, detail="This time slot was just booked. Please choose another slot.")

    appointment = get_appointment_or_404(db, appointment.id)
    data = serialize_appointment(db, appointment)
    logger.info("Appointment %s booked with doctor %s for %s", appointment.id, doctor.id, begin)

    await manager.publish_many(appointment_channels(appointment), "appointment.booked", data)
    return data


@router.get("", response_model=List[AppointmentOut])
async def list_appointments(
    upcoming: Optional[bool] = Query(None, description="true: upcoming, false: past, omitted: all"),
    status: Optional[AppointmentStatusName] = Query(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Appointments visible to the caller, earliest first"""
    query = appointment_query(db)

    if current_user.role == UserRole.PATIENT.value:
        query = query.filter(Appointment.patient_id == current_user.id)
    elif current_user.role == UserRole.DOCTOR.value:
        query = query.filter(Appointment.doctor_id == current_user.id)
    else:
        if current_user.hospital_id is None:
            return []
        query = query.filter(Appointment.hospital_id == current_user.hospital_id)

    if status:
        query = query.filter(Appointment.status == status)

    if upcoming is not None:
        now = datetime.now()
        later = or_(
            Appointment.date > now.date(),
            and_(Appointment.date == now.date(), Appointment.start_time >= now.time())
        )
        earlier = or_(
            Appointment.date < now.date(),
            and_(Appointment.date == now.date(), Appointment.start_time < now.time())
        )
        query = query.filter(later if upcoming else earlier)

    appointments = query.order_by(Appointment.date.asc(), Appointment.start_time.asc(), Appointment.id.asc()).all()
    return [serialize_appointment(db, apt) for apt in appointments]


@router.get("/queue/{doctor_id}", response_model=List[AppointmentOut])
async def get_doctor_queue(
    doctor_id: int,
    date: Optional[date] = Query(None, description="Defaults to today"),
    current_user: User = Depends(require_roles(UserRole.DOCTOR.value, UserRole.STAFF.value)),
    db: Session = Depends(get_db)
):
    """A doctor's open appointments for one day, in queue-number order"""
    doctor = get_doctor_or_404(db, doctor_id)
    if current_user.role == UserRole.DOCTOR.value:
        if current_user.id != doctor.id:
            raise HTTPException(status_code=403, detail="Not authorized to view this queue")
    else:
        ensure_hospital_member(current_user, doctor.hospital_id)

    day = date or datetime.now().date()
    appointments = appointment_query(db).filter(
        and_(
            Appointment.doctor_id == doctor.id,
            Appointment.date == day,
            Appointment.status.notin_(APPOINTMENT_TERMINAL_STATUSES)
        )
    ).order_by(Appointment.queue_number).all()
    return [serialize_appointment(db, apt) for apt in appointments]


@router.get("/{appointment_id}", response_model=AppointmentOut)
async def get_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    appointment = get_appointment_or_404(db, appointment_id)
    ensure_can_view(current_user, appointment)
    return serialize_appointment(db, appointment)


@router.patch("/{appointment_id}/status", response_model=AppointmentOut)
async def update_appointment_status(
    appointment_id: int,
    request: UpdateStatusRequest,
    current_user: User = Depends(require_roles(UserRole.DOCTOR.value, UserRole.STAFF.value)),
    db: Session = Depends(get_db)
):
    """
    Move an appointment forward through its lifecycle.

    Terminal statuses (completed, cancelled, no_show) never change again.
    """
    appointment = get_appointment_or_404(db, appointment_id)
    if current_user.role == UserRole.DOCTOR.value:
        if appointment.doctor_id != current_user.id:
            raise HTTPException(status_code=403, detail="Not authorized to update this appointment")
    else:
        ensure_hospital_member(current_user, appointment.hospital_id)

    target = AppointmentStatus(request.status)
    allowed_from = [s.value for s in APPOINTMENT_TRANSITIONS.get(target, [])]
    if appointment.status not in allowed_from:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot change appointment status from {appointment.status} to {target.value}"
        )
    if target == AppointmentStatus.CANCELLED:
        # Cancellation carries its own access and 24 h rules
        raise HTTPException(
            status_code=400,
            detail=f"Use DELETE /api/appointments/{appointment.id} to cancel an appointment"
        )

    now = datetime.now()
    values = {"status": target.value, "updated_at": now}
    if target == AppointmentStatus.IN_QUEUE:
        values["queued_at"] = now
    elif target == AppointmentStatus.IN_PROGRESS:
        values["started_at"] = now
        if appointment.queued_at:
            values["actual_wait_time"] = int((now - appointment.queued_at).total_seconds() // 60)

    for field in ("notes", "prescription", "follow_up_date"):
        value = getattr(request, field)
        if value is not None:
            values[field] = value

    previous = appointment.status
    guarded_update(db, appointment, allowed_from, values)
    log_action(
        db=db,
        user_id=current_user.id,
        action="APPOINTMENT_STATUS_UPDATED",
        entity_type="appointment",
        entity_id=appointment.id,
        details={"from": previous, "to": target.value}
    )
    db.commit()

    db.refresh(appointment)
    data = serialize_appointment(db, appointment)
    await manager.publish_many(appointment_channels(appointment), "appointment.updated", data)
    return data


@router.post("/{appointment_id}/check-in", response_model=AppointmentOut)
async def check_in_appointment(
    appointment_id: int,
    current_user: User = Depends(require_roles(UserRole.PATIENT.value, UserRole.STAFF.value)),
    db: Session = Depends(get_db)
):
    """Arrival at the hospital: a scheduled appointment joins the doctor's queue around its start time"""
    appointment = get_appointment_or_404(db, appointment_id)

    if current_user.role == UserRole.PATIENT.value:
        if appointment.patient_id != current_user.id:
            raise HTTPException(status_code=403, detail="Not authorized to check in this appointment")
    else:
        ensure_hospital_member(current_user, appointment.hospital_id)

    if appointment.status != AppointmentStatus.SCHEDULED.value:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot check in an appointment that is {appointment.status}"
        )

    now = datetime.now()
    window = timedelta(minutes=config.CHECK_IN_WINDOW_MINUTES)
    if abs(appointment_start(appointment) - now) > window:
        raise HTTPException(
            status_code=400,
            detail=f"Check-in is open from {config.CHECK_IN_WINDOW_MINUTES} minutes before to "
                   f"{config.CHECK_IN_WINDOW_MINUTES} minutes after the appointment"
        )

    guarded_update(db, appointment, [AppointmentStatus.SCHEDULED.value], {
        "status": AppointmentStatus.IN_QUEUE.value,
        "queued_at": now,
        "updated_at": now,
    })
    log_action(
        db=db,
        user_id=current_user.id,
        action="APPOINTMENT_CHECKED_IN",
        entity_type="appointment",
        entity_id=appointment.id,
        details={"by_role": current_user.role}
    )
    db.commit()

    db.refresh(appointment)
    data = serialize_appointment(db, appointment)
    logger.info("Appointment %s checked in", appointment.id)
    await manager.publish_many(appointment_channels(appointment), "appointment.updated", data)
    return data


@router.delete("/{appointment_id}", response_model=AppointmentOut)
async def cancel_appointment(
    appointment_id: int,
    reason: Optional[str] = Query(None, max_length=255),
    current_user: User = Depends(require_roles(UserRole.PATIENT.value, UserRole.STAFF.value)),
    db: Session = Depends(get_db)
):
    """
    Cancel an appointment

    Rules:
    - Patients cancel their own appointments, staff any at their hospital
    - Patients cannot cancel within 24 hours of the start time
    - Only scheduled or queued appointments can be cancelled; the slot is released
    """
    appointment = get_appointment_or_404(db, appointment_id)

    if current_user.role == UserRole.PATIENT.value:
        if appointment.patient_id != current_user.id:
            raise HTTPException(status_code=403, detail="Not authorized to cancel this appointment")
    else:
        ensure_hospital_member(current_user, appointment.hospital_id)

    if appointment.status not in CANCELLABLE_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot cancel an appointment that is {appointment.status}"
        )

    if current_user.role == UserRole.PATIENT.value:
        window = timedelta(hours=config.CANCELLATION_WINDOW_HOURS)
        if appointment_start(appointment) - datetime.now() < window:
            raise HTTPException(
                status_code=400,
                detail=f"Cannot cancel within {config.CANCELLATION_WINDOW_HOURS} hours of the appointment. Please contact the hospital."
            )

    now = datetime.now()
    guarded_update(db, appointment, CANCELLABLE_STATUSES, {
        "status": AppointmentStatus.CANCELLED.value,
        "slot_key": None,
        "cancelled_at": now,
        "cancellation_reason": reason,
        "updated_at": now,
    })
    log_action(
        db=db,
        user_id=current_user.id,
        action="APPOINTMENT_CANCELLED",
        entity_type="appointment",
        entity_id=appointment.id,
        details={"reason": reason, "by_role": current_user.role}
    )
    db.commit()

    db.refresh(appointment)
    data = serialize_appointment(db, appointment)
    logger.info("Appointment %s cancelled by user %s", appointment.id, current_user.id)
    await manager.publish_many(appointment_channels(appointment), "appointment.cancelled", data)
    return data
