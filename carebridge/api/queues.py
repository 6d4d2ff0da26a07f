from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.exc import IntegrityError
from sqlalchemy import and_
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime, date
import logging

from .. import config
from ..database.connection import get_db
from ..database.models import (
    User, Hospital, Queue, QueueEntry, UserRole, QueueStatus, QueueEntryStatus,
    QUEUE_ENTRY_TRANSITIONS, QUEUE_ENTRY_ACTIVE_STATUSES,
)
from ..realtime import manager, hospital_channel, patient_channel
from ..schemas import QueueOut, QueueStatusName, QueueEntryStatusName
from .auth import get_current_user, require_roles, ensure_hospital_member
from .audit import log_action

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/queues", tags=["Queues"])

# ==================== PYDANTIC MODELS ====================

class QueueCreateRequest(BaseModel):
    hospital_id: int
    doctor_id: int
    date: date
    max_patients: int = Field(config.DEFAULT_QUEUE_CAPACITY, ge=1, le=500)


class JoinQueueRequest(BaseModel):
    patient_id: Optional[int] = Field(None, description="Required when staff/doctor add a patient")
    reason: str = Field(..., min_length=1, max_length=500)
    priority: int = Field(0, ge=0, le=10, description="Higher is served first")
    appointment_time: Optional[datetime] = None


class UpdateEntryStatusRequest(BaseModel):
    status: QueueEntryStatusName


class UpdateQueueStatusRequest(BaseModel):
    status: QueueStatusName

# ==================== HELPER FUNCTIONS ====================

def queue_query(db: Session):
    return db.query(Queue).options(
        joinedload(Queue.hospital),
        joinedload(Queue.doctor).joinedload(User.doctor_profile),
        joinedload(Queue.entries).joinedload(QueueEntry.patient)
    )


def get_queue_or_404(db: Session, queue_id: int) -> Queue:
    queue = queue_query(db).filter(Queue.id == queue_id).first()
    if not queue:
        raise HTTPException(status_code=404, detail="Queue not found")
    return queue


def get_entry_or_404(queue: Queue, entry_id: int) -> QueueEntry:
    for entry in queue.entries:
        if entry.id == entry_id:
            return entry
    raise HTTPException(status_code=404, detail="Patient not found in queue")


def consultation_minutes(queue: Queue) -> int:
    profile = queue.doctor.doctor_profile if queue.doctor else None
    return (profile.avg_consultation_time if profile else None) or config.DEFAULT_CONSULTATION_MINUTES


def ordered_entries(queue: Queue) -> List[QueueEntry]:
    """Serving order: the consultation in progress, then higher priority, then join order"""
    return sorted(
        queue.entries,
        key=lambda e: (e.status != QueueEntryStatus.IN_PROGRESS.value, -e.priority, e.position)
    )


def average_wait_minutes(queue: Queue) -> int:
    waits = [
        (e.started_at - e.joined_at).total_seconds() / 60
        for e in queue.entries
        if e.started_at and e.joined_at
    ]
    if not waits:
        return consultation_minutes(queue)
    return int(round(sum(waits) / len(waits)))


def serialize_entry(entry: QueueEntry, estimated_wait: Optional[int]) -> dict:
    return {
        "id": entry.id,
        "patient_id": entry.patient_id,
        "patient_name": entry.patient.full_name,
        "status": entry.status,
        "appointment_time": entry.appointment_time,
        "priority": entry.priority,
        "reason": entry.reason,
        "position": entry.position,
        "estimated_wait_time": estimated_wait,
        "joined_at": entry.joined_at,
        "started_at": entry.started_at,
        "completed_at": entry.completed_at,
    }


def serialize_queue(queue: Queue) -> dict:
    """
    Queue with entries in serving order. Each non-terminal entry's estimated
    wait is the number of non-terminal entries ahead of it times the doctor's
    average consultation time.
    """
    minutes = consultation_minutes(queue)
    patients = []
    ahead = 0
    for entry in ordered_entries(queue):
        if entry.status in QUEUE_ENTRY_ACTIVE_STATUSES:
            patients.append(serialize_entry(entry, ahead * minutes))
            ahead += 1
        else:
            patients.append(serialize_entry(entry, None))

    return {
        "id": queue.id,
        "hospital_id": queue.hospital_id,
        "hospital_name": queue.hospital.name,
        "doctor_id": queue.doctor_id,
        "doctor_name": queue.doctor.full_name,
        "date": queue.date,
        "status": queue.status,
        "max_patients": queue.max_patients,
        "version": queue.version,
        "average_wait_time": average_wait_minutes(queue),
        "patients": patients,
    }


def ensure_queue_operator(user: User, queue: Queue) -> None:
    """Doctors run their own queues, staff the queues of their hospital"""
    if user.role == UserRole.DOCTOR.value:
        if queue.doctor_id != user.id:
            raise HTTPException(status_code=403, detail="Not authorized to manage this queue")
    elif user.role == UserRole.STAFF.value:
        ensure_hospital_member(user, queue.hospital_id)
    else:
        raise HTTPException(status_code=403, detail="Not authorized to manage this queue")


def bump_version(db: Session, queue: Queue, **values) -> None:
    """
    Claim the queue for this transaction: UPDATE ... WHERE version = <read version>.
    Every queue mutation goes through here, so a writer that read a stale
    queue gets 409 instead of overwriting a concurrent change.
    """
    values.update({"version": Queue.version + 1, "updated_at": datetime.now()})
    rows = db.query(Queue).filter(
        and_(Queue.id == queue.id, Queue.version == queue.version)
    ).update(values, synchronize_session=False)

    if rows == 0:
        db.rollback()
        raise HTTPException(status_code=409, detail="Queue was modified concurrently, retry")


def transition_entry(db: Session, queue: Queue, entry: QueueEntry, target: QueueEntryStatus) -> str:
    """Validate and apply one entry transition inside the caller's transaction"""
    allowed_from = [s.value for s in QUEUE_ENTRY_TRANSITIONS.get(target, [])]
    if entry.status not in allowed_from:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot change queue status from {entry.status} to {target.value}"
        )

    if target == QueueEntryStatus.IN_PROGRESS:
        busy = [e for e in queue.entries if e.status == QueueEntryStatus.IN_PROGRESS.value and e.id != entry.id]
        if busy:
            raise HTTPException(status_code=400, detail="Another patient is already in consultation")

    now = datetime.now()
    values = {"status": target.value}
    if target == QueueEntryStatus.IN_PROGRESS:
        values["started_at"] = now
    else:
        values["completed_at"] = now

    previous = entry.status
    bump_version(db, queue)
    rows = db.query(QueueEntry).filter(
        and_(QueueEntry.id == entry.id, QueueEntry.status.in_(allowed_from))
    ).update(values, synchronize_session=False)
    if rows == 0:
        db.rollback()
        raise HTTPException(status_code=409, detail="Queue was modified concurrently, retry")
    return previous


async def publish_queue(queue: Queue, data: dict, patient_id: Optional[int] = None):
    await manager.publish(hospital_channel(queue.hospital_id), "queue.updated", data)
    if patient_id is not None:
        entry = next((p for p in data["patients"] if p["patient_id"] == patient_id), None)
        await manager.publish(
            patient_channel(patient_id),
            "queue.entry_updated",
            {"queue_id": queue.id, "entry": entry}
        )


def reload(db: Session, queue_id: int) -> Queue:
    db.expire_all()
    return get_queue_or_404(db, queue_id)

# ==================== API ENDPOINTS ====================

@router.post("", response_model=QueueOut, status_code=201)
async def create_queue(
    request: QueueCreateRequest,
    current_user: User = Depends(require_roles(UserRole.STAFF.value, UserRole.DOCTOR.value)),
    db: Session = Depends(get_db)
):
    """Open a doctor's queue for one day at a hospital"""
    hospital = db.query(Hospital).filter(Hospital.id == request.hospital_id).first()
    if not hospital:
        raise HTTPException(status_code=404, detail="Hospital not found")

    doctor = db.query(User).filter(
        and_(
            User.id == request.doctor_id,
            User.role == UserRole.DOCTOR.value,
            User.hospital_id == hospital.id
        )
    ).first()
    if not doctor:
        raise HTTPException(status_code=404, detail="Doctor not found in this hospital")

    if current_user.role == UserRole.DOCTOR.value and current_user.id != doctor.id:
        raise HTTPException(status_code=403, detail="Doctors can only open their own queue")
    if current_user.role == UserRole.STAFF.value:
        ensure_hospital_member(current_user, hospital.id)

    existing = db.query(Queue.id).filter(
        and_(Queue.hospital_id == hospital.id, Queue.doctor_id == doctor.id, Queue.date == request.date)
    ).first()
    if existing:
        raise HTTPException(status_code=409, detail="A queue already exists for this doctor on this date")

    queue = Queue(
        hospital_id=hospital.id,
        doctor_id=doctor.id,
        date=request.date,
        status=QueueStatus.ACTIVE.value,
        max_patients=request.max_patients,
        version=0,
    )
    db.add(queue)
    try:
        db.flush()
        log_action(
            db=db,
            user_id=current_user.id,
            action="QUEUE_CREATED",
            entity_type="queue",
            entity_id=queue.id,
            details={"hospital_id": hospital.id, "doctor_id": doctor.id, "date": str(request.date)}
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="A queue already exists for this doctor on this date")

    queue = reload(db, queue.id)
    data = serialize_queue(queue)
    logger.info("Queue %s opened for doctor %s on %s", queue.id, doctor.id, request.date)
    await manager.publish(hospital_channel(queue.hospital_id), "queue.created", data)
    return data


@router.get("/doctor/{doctor_id}", response_model=List[QueueOut])
async def get_doctor_queues(
    doctor_id: int,
    date: Optional[date] = Query(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    query = queue_query(db).filter(Queue.doctor_id == doctor_id)
    if date:
        query = query.filter(Queue.date == date)
    return [serialize_queue(q) for q in query.order_by(Queue.date.desc()).all()]


@router.get("/hospital/{hospital_id}", response_model=List[QueueOut])
async def get_hospital_queues(
    hospital_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """All queues of a hospital, most recent first"""
    if not db.query(Hospital.id).filter(Hospital.id == hospital_id).first():
        raise HTTPException(status_code=404, detail="Hospital not found")
    queues = queue_query(db).filter(Queue.hospital_id == hospital_id).order_by(Queue.date.desc(), Queue.id.desc()).all()
    return [serialize_queue(q) for q in queues]


@router.get("/patient/{patient_id}", response_model=List[QueueOut])
async def get_patient_queues(
    patient_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    if current_user.role == UserRole.PATIENT.value and current_user.id != patient_id:
        raise HTTPException(status_code=403, detail="Not authorized to view these queues")

    queue_ids = db.query(QueueEntry.queue_id).filter(QueueEntry.patient_id == patient_id).distinct()
    queues = queue_query(db).filter(Queue.id.in_(queue_ids)).order_by(Queue.date.desc(), Queue.id.desc()).all()
    return [serialize_queue(q) for q in queues]


@router.get("/{queue_id}", response_model=QueueOut)
async def get_queue(
    queue_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return serialize_queue(get_queue_or_404(db, queue_id))


@router.post("/{queue_id}/patients", response_model=QueueOut)
async def join_queue(
    queue_id: int,
    request: JoinQueueRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Add a patient to the queue.

    Patients join as themselves; staff and doctors add patients to queues they
    manage and may set a priority.
    """
    queue = get_queue_or_404(db, queue_id)

    if current_user.role == UserRole.PATIENT.value:
        if request.patient_id not in (None, current_user.id):
            raise HTTPException(status_code=403, detail="Patients can only join a queue themselves")
        if request.priority:
            raise HTTPException(status_code=403, detail="Only staff or doctors can set a priority")
        patient_id = current_user.id
    else:
        ensure_queue_operator(current_user, queue)
        if request.patient_id is None:
            raise HTTPException(status_code=400, detail="patient_id is required")
        patient_id = request.patient_id

    patient = db.query(User).filter(
        and_(User.id == patient_id, User.role == UserRole.PATIENT.value)
    ).first()
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")

    if queue.status != QueueStatus.ACTIVE.value:
        raise HTTPException(status_code=400, detail=f"Queue is {queue.status} and not accepting patients")

    active = [e for e in queue.entries if e.status in QUEUE_ENTRY_ACTIVE_STATUSES]
    if any(e.patient_id == patient.id for e in active):
        raise HTTPException(status_code=400, detail="Patient is already in this queue")
    if len(active) >= queue.max_patients:
        raise HTTPException(status_code=400, detail="Queue is full")

    bump_version(db, queue)
    entry = QueueEntry(
        queue_id=queue.id,
        patient_id=patient.id,
        status=QueueEntryStatus.WAITING.value,
        appointment_time=request.appointment_time or datetime.now(),
        priority=request.priority,
        reason=request.reason,
        position=max((e.position for e in queue.entries), default=0) + 1,
        joined_at=datetime.now(),
    )
    db.add(entry)
    db.flush()
    log_action(
        db=db,
        user_id=current_user.id,
        action="QUEUE_JOINED",
        entity_type="queue",
        entity_id=queue.id,
        details={"patient_id": patient.id, "entry_id": entry.id, "priority": request.priority}
    )
    db.commit()

    queue = reload(db, queue.id)
    data = serialize_queue(queue)
    await publish_queue(queue, data, patient.id)
    return data


@router.put("/{queue_id}/patients/{entry_id}", response_model=QueueOut)
async def update_patient_status(
    queue_id: int,
    entry_id: int,
    request: UpdateEntryStatusRequest,
    current_user: User = Depends(require_roles(UserRole.STAFF.value, UserRole.DOCTOR.value)),
    db: Session = Depends(get_db)
):
    """Move one queue entry forward (waiting -> in_progress -> completed, or no_show/cancelled)"""
    queue = get_queue_or_404(db, queue_id)
    ensure_queue_operator(current_user, queue)
    entry = get_entry_or_404(queue, entry_id)

    target = QueueEntryStatus(request.status)
    previous = transition_entry(db, queue, entry, target)
    log_action(
        db=db,
        user_id=current_user.id,
        action="QUEUE_ENTRY_UPDATED",
        entity_type="queue",
        entity_id=queue.id,
        details={"entry_id": entry.id, "from": previous, "to": target.value}
    )
    db.commit()

    patient_id = entry.patient_id
    queue = reload(db, queue.id)
    data = serialize_queue(queue)
    await publish_queue(queue, data, patient_id)
    return data


@router.delete("/{queue_id}/patients/{entry_id}", response_model=QueueOut)
async def leave_queue(
    queue_id: int,
    entry_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Withdraw a waiting entry. The entry stays in the queue as cancelled."""
    queue = get_queue_or_404(db, queue_id)
    entry = get_entry_or_404(queue, entry_id)

    if current_user.role == UserRole.PATIENT.value:
        if entry.patient_id != current_user.id:
            raise HTTPException(status_code=403, detail="Not authorized to remove this patient")
    else:
        ensure_queue_operator(current_user, queue)

    transition_entry(db, queue, entry, QueueEntryStatus.CANCELLED)
    log_action(
        db=db,
        user_id=current_user.id,
        action="QUEUE_LEFT",
        entity_type="queue",
        entity_id=queue.id,
        details={"entry_id": entry.id}
    )
    db.commit()

    patient_id = entry.patient_id
    queue = reload(db, queue.id)
    data = serialize_queue(queue)
    await publish_queue(queue, data, patient_id)
    return data


@router.put("/{queue_id}/status", response_model=QueueOut)
async def update_queue_status(
    queue_id: int,
    request: UpdateQueueStatusRequest,
    current_user: User = Depends(require_roles(UserRole.STAFF.value, UserRole.DOCTOR.value)),
    db: Session = Depends(get_db)
):
    """Pause, resume or close a queue. Closed queues stay closed."""
    queue = get_queue_or_404(db, queue_id)
    ensure_queue_operator(current_user, queue)

    if queue.status == QueueStatus.CLOSED.value:
        raise HTTPException(status_code=400, detail="Queue is closed")

    previous = queue.status
    bump_version(db, queue, status=request.status)
    log_action(
        db=db,
        user_id=current_user.id,
        action="QUEUE_STATUS_UPDATED",
        entity_type="queue",
        entity_id=queue.id,
        details={"from": previous, "to": request.status}
    )
    db.commit()

    queue = reload(db, queue.id)
    data = serialize_queue(queue)
    await publish_queue(queue, data)
    return data
