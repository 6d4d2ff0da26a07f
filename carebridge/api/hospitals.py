from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import and_
from pydantic import BaseModel, Field, EmailStr
from typing import List, Optional
import logging

from .. import config
from ..database.connection import get_db
from ..database.models import User, Hospital, UserRole
from ..geo import calculate_distance, meters_to_km, bounding_box
from ..schemas import HospitalOut, DoctorOut, MessageOut
from .auth import get_current_user, require_roles, ensure_hospital_member
from .audit import log_action
from .doctors import serialize_doctor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/hospitals", tags=["Hospitals"])

# ==================== PYDANTIC MODELS ====================

class HospitalCreateRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    address: str = Field(..., min_length=2)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[EmailStr] = None


class HospitalUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=200)
    address: Optional[str] = Field(None, min_length=2)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[EmailStr] = None

# ==================== HELPER FUNCTIONS ====================

def serialize_hospital(hospital: Hospital, distance_km: Optional[float] = None) -> dict:
    return {
        "id": hospital.id,
        "name": hospital.name,
        "address": hospital.address,
        "latitude": hospital.latitude,
        "longitude": hospital.longitude,
        "phone": hospital.phone,
        "email": hospital.email,
        "distance_km": round(distance_km, 3) if distance_km is not None else None,
    }


def find_hospitals_near(db: Session, latitude: float, longitude: float, max_distance_m: float) -> List[tuple]:
    """
    Hospitals within max_distance_m meters of the point as (hospital, distance_km),
    nearest first. Bounding box on the indexed columns, then exact haversine.
    """
    radius_km = meters_to_km(max_distance_m)
    min_lat, max_lat, min_lng, max_lng = bounding_box(latitude, longitude, radius_km)

    filters = [Hospital.latitude >= min_lat, Hospital.latitude <= max_lat]
    # Boxes crossing the antimeridian are filtered on latitude only
    if min_lng >= -180 and max_lng <= 180:
        filters += [Hospital.longitude >= min_lng, Hospital.longitude <= max_lng]

    results = []
    for hospital in db.query(Hospital).filter(and_(*filters)).all():
        distance = calculate_distance(latitude, longitude, hospital.latitude, hospital.longitude)
        if distance <= radius_km:
            results.append((hospital, distance))

    results.sort(key=lambda item: item[1])
    return results


def get_hospital_or_404(db: Session, hospital_id: int) -> Hospital:
    hospital = db.query(Hospital).filter(Hospital.id == hospital_id).first()
    if not hospital:
        raise HTTPException(status_code=404, detail="Hospital not found")
    return hospital


def get_doctor_user_or_404(db: Session, doctor_id: int) -> User:
    doctor = db.query(User).options(joinedload(User.doctor_profile)).filter(
        and_(User.id == doctor_id, User.role == UserRole.DOCTOR.value)
    ).first()
    if not doctor:
        raise HTTPException(status_code=404, detail="Doctor not found")
    return doctor

# ==================== API ENDPOINTS ====================

@router.post("", response_model=HospitalOut, status_code=201)
async def create_hospital(
    request: HospitalCreateRequest,
    current_user: User = Depends(require_roles(UserRole.STAFF.value)),
    db: Session = Depends(get_db)
):
    """Create a hospital. Staff without an affiliation become members of it."""
    hospital = Hospital(**request.model_dump())
    db.add(hospital)
    db.flush()

    if current_user.hospital_id is None:
        current_user.hospital_id = hospital.id

    log_action(
        db=db,
        user_id=current_user.id,
        action="HOSPITAL_CREATED",
        entity_type="hospital",
        entity_id=hospital.id,
        details={"name": hospital.name}
    )
    db.commit()
    db.refresh(hospital)
    logger.info("Hospital %s created by user %s", hospital.id, current_user.id)
    return serialize_hospital(hospital)


@router.get("", response_model=List[HospitalOut])
async def list_hospitals(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    hospitals = db.query(Hospital).order_by(Hospital.name).all()
    return [serialize_hospital(h) for h in hospitals]


@router.get("/near", response_model=List[HospitalOut])
async def find_nearby_hospitals(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    max_distance: float = Query(config.DEFAULT_SEARCH_RADIUS_METERS, alias="maxDistance", gt=0,
                                description="Search radius in meters"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Hospitals within maxDistance meters, nearest first"""
    nearby = find_hospitals_near(db, latitude, longitude, max_distance)
    return [serialize_hospital(h, distance) for h, distance in nearby]


@router.get("/{hospital_id}", response_model=HospitalOut)
async def get_hospital(
    hospital_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return serialize_hospital(get_hospital_or_404(db, hospital_id))


@router.put("/{hospital_id}", response_model=HospitalOut)
async def update_hospital(
    hospital_id: int,
    request: HospitalUpdateRequest,
    current_user: User = Depends(require_roles(UserRole.STAFF.value)),
    db: Session = Depends(get_db)
):
    hospital = get_hospital_or_404(db, hospital_id)
    ensure_hospital_member(current_user, hospital.id)

    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in changes.items():
        setattr(hospital, field, value)

    log_action(
        db=db,
        user_id=current_user.id,
        action="HOSPITAL_UPDATED",
        entity_type="hospital",
        entity_id=hospital.id,
        details={"fields": sorted(changes)}
    )
    db.commit()
    db.refresh(hospital)
    return serialize_hospital(hospital)


@router.get("/{hospital_id}/doctors", response_model=List[DoctorOut])
async def get_hospital_doctors(
    hospital_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    hospital = get_hospital_or_404(db, hospital_id)
    doctors = db.query(User).options(joinedload(User.doctor_profile)).filter(
        and_(User.hospital_id == hospital.id, User.role == UserRole.DOCTOR.value)
    ).order_by(User.last_name, User.first_name).all()
    return [serialize_doctor(d) for d in doctors if d.doctor_profile]


@router.post("/{hospital_id}/doctors/{doctor_id}", response_model=DoctorOut)
async def assign_doctor(
    hospital_id: int,
    doctor_id: int,
    current_user: User = Depends(require_roles(UserRole.STAFF.value)),
    db: Session = Depends(get_db)
):
    hospital = get_hospital_or_404(db, hospital_id)
    ensure_hospital_member(current_user, hospital.id)
    doctor = get_doctor_user_or_404(db, doctor_id)

    if doctor.hospital_id is not None and doctor.hospital_id != hospital.id:
        raise HTTPException(status_code=400, detail="Doctor is already affiliated with another hospital")

    doctor.hospital_id = hospital.id
    log_action(
        db=db,
        user_id=current_user.id,
        action="DOCTOR_ASSIGNED",
        entity_type="hospital",
        entity_id=hospital.id,
        details={"doctor_id": doctor.id}
    )
    db.commit()
    db.refresh(doctor)
    return serialize_doctor(doctor)


@router.delete("/{hospital_id}/doctors/{doctor_id}", response_model=MessageOut)
async def remove_doctor(
    hospital_id: int,
    doctor_id: int,
    current_user: User = Depends(require_roles(UserRole.STAFF.value)),
    db: Session = Depends(get_db)
):
    hospital = get_hospital_or_404(db, hospital_id)
    ensure_hospital_member(current_user, hospital.id)
    doctor = get_doctor_user_or_404(db, doctor_id)

    if doctor.hospital_id != hospital.id:
        raise HTTPException(status_code=404, detail="Doctor not found in this hospital")

    doctor.hospital_id = None
    log_action(
        db=db,
        user_id=current_user.id,
        action="DOCTOR_REMOVED",
        entity_type="hospital",
        entity_id=hospital.id,
        details={"doctor_id": doctor.id}
    )
    db.commit()
    return {"message": "Doctor removed from hospital"}
