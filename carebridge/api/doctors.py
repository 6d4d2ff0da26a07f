from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import and_, or_, func
from pydantic import BaseModel, Field, model_validator
from typing import List, Optional
from datetime import datetime, date, time, timedelta
import logging

from .. import config
from ..database.connection import get_db
from ..database.models import User, DoctorProfile, Hospital, Appointment, UserRole
from ..geo import calculate_distance, meters_to_km, bounding_box
from ..schemas import AvailabilityWindow, Qualification, DoctorOut, DoctorProfileOut, DoctorAvailabilityOut
from .auth import get_current_user, require_roles
from .audit import log_action

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/doctors", tags=["Doctors"])

DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

# ==================== PYDANTIC MODELS ====================

class UpdateDoctorProfileRequest(BaseModel):
    specialization: Optional[str] = Field(None, min_length=2, max_length=100)
    qualifications: Optional[List[Qualification]] = None
    experience_years: Optional[int] = Field(None, ge=0, le=70)
    consultation_fee: Optional[int] = Field(None, ge=0)
    avg_consultation_time: Optional[int] = Field(None, ge=5, le=240)
    availability: Optional[List[AvailabilityWindow]] = None
    languages: Optional[List[str]] = None
    bio: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def check_windows(self):
        for window in self.availability or []:
            validate_window(window)
        return self


class DayAvailabilityRequest(BaseModel):
    start_time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    end_time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    is_available: bool = True

# ==================== HELPER FUNCTIONS ====================

def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def normalize_day(day: str) -> str:
    """'monday' / 'MON' / 'Monday' -> 'Monday'"""
    key = day.strip().lower()
    for name in DAYS:
        if name.lower() == key or name.lower()[:3] == key:
            return name
    raise ValueError(f"Unknown day '{day}'")


def weekday_name(day: date) -> str:
    return DAYS[day.weekday()]


def validate_window(window: AvailabilityWindow) -> AvailabilityWindow:
    window.day = normalize_day(window.day)
    if parse_hhmm(window.start_time) >= parse_hhmm(window.end_time):
        raise ValueError(f"{window.day}: start_time must be before end_time")
    return window


def windows_for_day(profile: DoctorProfile, day: date) -> List[dict]:
    name = weekday_name(day)
    return [
        w for w in (profile.availability or [])
        if w.get("is_available", True) and normalize_day(w["day"]) == name
    ]


def find_window(profile: DoctorProfile, day: date, start: time) -> Optional[dict]:
    """
    Availability window that fits a full consultation starting at `start`.
    The start must sit on the window's slot grid (window start + k * duration).
    """
    duration = timedelta(minutes=profile.avg_consultation_time or config.DEFAULT_CONSULTATION_MINUTES)
    begin = datetime.combine(day, start)
    for window in windows_for_day(profile, day):
        window_start = datetime.combine(day, parse_hhmm(window["start_time"]))
        window_end = datetime.combine(day, parse_hhmm(window["end_time"]))
        if window_start <= begin and begin + duration <= window_end \
                and (begin - window_start) % duration == timedelta(0):
            return window
    return None


def overlaps(day: date, begin: datetime, end: datetime, held: List[tuple]) -> bool:
    """True when [begin, end) intersects any held (start_time, end_time) range of the day"""
    for held_start, held_end in held:
        if begin < datetime.combine(day, held_end) and datetime.combine(day, held_start) < end:
            return True
    return False


def free_slots(profile: DoctorProfile, day: date, held: List[tuple], now: Optional[datetime] = None) -> List[str]:
    """Start times inside the day's windows, one consultation apart, minus held and past ones"""
    now = now or datetime.now()
    duration = timedelta(minutes=profile.avg_consultation_time or config.DEFAULT_CONSULTATION_MINUTES)
    slots = []
    for window in sorted(windows_for_day(profile, day), key=lambda w: w["start_time"]):
        cursor = datetime.combine(day, parse_hhmm(window["start_time"]))
        window_end = datetime.combine(day, parse_hhmm(window["end_time"]))
        while cursor + duration <= window_end:
            if cursor > now and not overlaps(day, cursor, cursor + duration, held):
                slots.append(cursor.strftime("%H:%M"))
            cursor += duration
    return slots


def serialize_profile(profile: DoctorProfile) -> dict:
    return {
        "id": profile.id,
        "user_id": profile.user_id,
        "specialization": profile.specialization,
        "qualifications": profile.qualifications or [],
        "experience_years": profile.experience_years or 0,
        "consultation_fee": profile.consultation_fee or 0,
        "avg_consultation_time": profile.avg_consultation_time or config.DEFAULT_CONSULTATION_MINUTES,
        "availability": profile.availability or [],
        "languages": profile.languages or [],
        "bio": profile.bio,
        "latitude": profile.latitude,
        "longitude": profile.longitude,
    }


def serialize_doctor(user: User, distance_km: Optional[float] = None) -> dict:
    return {
        "id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email": user.email,
        "hospital_id": user.hospital_id,
        "hospital_name": user.hospital.name if user.hospital else None,
        "profile": serialize_profile(user.doctor_profile),
        "distance_km": round(distance_km, 3) if distance_km is not None else None,
    }


def doctor_location(user: User) -> Optional[tuple]:
    profile = user.doctor_profile
    if profile.latitude is not None and profile.longitude is not None:
        return profile.latitude, profile.longitude
    if user.hospital:
        return user.hospital.latitude, user.hospital.longitude
    return None


def doctors_query(db: Session):
    return db.query(User).join(DoctorProfile, DoctorProfile.user_id == User.id).options(
        joinedload(User.doctor_profile),
        joinedload(User.hospital)
    ).filter(and_(User.role == UserRole.DOCTOR.value, User.is_active == True))


def get_doctor_or_404(db: Session, doctor_id: int) -> User:
    doctor = doctors_query(db).filter(User.id == doctor_id).first()
    if not doctor:
        raise HTTPException(status_code=404, detail="Doctor not found")
    return doctor


def held_ranges(db: Session, doctor_id: int, day: date) -> List[tuple]:
    """(start_time, end_time) of every appointment still holding its slot"""
    rows = db.query(Appointment.start_time, Appointment.end_time).filter(
        and_(
            Appointment.doctor_id == doctor_id,
            Appointment.date == day,
            Appointment.slot_key.isnot(None)
        )
    ).all()
    return [(row.start_time, row.end_time) for row in rows]


def save_profile(db: Session, current_user: User, action: str, details: dict) -> dict:
    log_action(
        db=db,
        user_id=current_user.id,
        action=action,
        entity_type="doctor_profile",
        entity_id=current_user.doctor_profile.id,
        details=details
    )
    db.commit()
    db.refresh(current_user)
    return serialize_profile(current_user.doctor_profile)


def own_profile(current_user: User) -> DoctorProfile:
    if not current_user.doctor_profile:
        raise HTTPException(status_code=404, detail="Doctor profile not found")
    return current_user.doctor_profile

# ==================== API ENDPOINTS ====================

@router.get("/profile", response_model=DoctorProfileOut)
async def get_profile(
    current_user: User = Depends(require_roles(UserRole.DOCTOR.value))
):
    return serialize_profile(own_profile(current_user))


@router.put("/profile", response_model=DoctorProfileOut)
async def update_profile(
    request: UpdateDoctorProfileRequest,
    current_user: User = Depends(require_roles(UserRole.DOCTOR.value)),
    db: Session = Depends(get_db)
):
    profile = own_profile(current_user)
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in changes.items():
        setattr(profile, field, value)

    return save_profile(db, current_user, "DOCTOR_PROFILE_UPDATED", {"fields": sorted(changes)})


@router.put("/profile/availability/{day}", response_model=DoctorProfileOut)
async def update_day_availability(
    day: str,
    request: DayAvailabilityRequest,
    current_user: User = Depends(require_roles(UserRole.DOCTOR.value)),
    db: Session = Depends(get_db)
):
    """Replace the availability window(s) of one weekday"""
    profile = own_profile(current_user)
    try:
        window = validate_window(AvailabilityWindow(day=day, **request.model_dump()))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # JSON columns only persist on reassignment
    profile.availability = [
        w for w in (profile.availability or []) if normalize_day(w["day"]) != window.day
    ] + [window.model_dump()]

    return save_profile(db, current_user, "DOCTOR_AVAILABILITY_UPDATED", {"day": window.day})


@router.post("/profile/qualifications", response_model=DoctorProfileOut, status_code=201)
async def add_qualification(
    request: Qualification,
    current_user: User = Depends(require_roles(UserRole.DOCTOR.value)),
    db: Session = Depends(get_db)
):
    profile = own_profile(current_user)
    profile.qualifications = list(profile.qualifications or []) + [request.model_dump()]
    return save_profile(db, current_user, "DOCTOR_QUALIFICATION_ADDED", {"degree": request.degree})


@router.get("/search", response_model=List[DoctorOut])
async def search_doctors(
    specialization: Optional[str] = Query(None, description="Case-insensitive match"),
    date: Optional[date] = Query(None, description="Only doctors available on this date's weekday"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    query = doctors_query(db)
    if specialization:
        query = query.filter(func.lower(DoctorProfile.specialization).contains(specialization.lower()))

    doctors = query.order_by(User.last_name, User.first_name).all()
    if date:
        doctors = [d for d in doctors if windows_for_day(d.doctor_profile, date)]

    return [serialize_doctor(d) for d in doctors]


@router.get("/near", response_model=List[DoctorOut])
async def find_nearby_doctors(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    max_distance: float = Query(config.DEFAULT_SEARCH_RADIUS_METERS, alias="maxDistance", gt=0,
                                description="Search radius in meters"),
    specialization: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Doctors within maxDistance meters (practice location, else hospital), nearest first"""
    radius_km = meters_to_km(max_distance)
    min_lat, max_lat, _, _ = bounding_box(latitude, longitude, radius_km)

    # Same rule as doctor_location: the practice location counts only when both coordinates are set
    has_practice = and_(DoctorProfile.latitude.isnot(None), DoctorProfile.longitude.isnot(None))
    query = doctors_query(db).outerjoin(Hospital, Hospital.id == User.hospital_id).filter(
        or_(
            and_(has_practice, DoctorProfile.latitude.between(min_lat, max_lat)),
            and_(~has_practice, Hospital.latitude.between(min_lat, max_lat))
        )
    )
    if specialization:
        query = query.filter(func.lower(DoctorProfile.specialization).contains(specialization.lower()))

    results = []
    for doctor in query.all():
        location = doctor_location(doctor)
        if location is None:
            continue
        distance = calculate_distance(latitude, longitude, location[0], location[1])
        if distance <= radius_km:
            results.append((doctor, distance))

    results.sort(key=lambda item: item[1])
    return [serialize_doctor(d, distance) for d, distance in results]


@router.get("/{doctor_id}", response_model=DoctorOut)
async def get_doctor(
    doctor_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return serialize_doctor(get_doctor_or_404(db, doctor_id))


@router.get("/{doctor_id}/availability", response_model=DoctorAvailabilityOut)
async def get_doctor_availability(
    doctor_id: int,
    date: date = Query(..., description="Date in YYYY-MM-DD format"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """The day's availability windows and bookable start times"""
    doctor = get_doctor_or_404(db, doctor_id)
    profile = doctor.doctor_profile

    return {
        "doctor_id": doctor.id,
        "date": date,
        "day": weekday_name(date),
        "windows": windows_for_day(profile, date),
        "free_slots": free_slots(profile, date, held_ranges(db, doctor.id, date)),
    }
