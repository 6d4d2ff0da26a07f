"""
Response schemas shared by the API routers and the API client.

Every endpoint returns exactly one of these shapes; the client validates
payloads against the same models and rejects anything that does not conform.
"""
import datetime as dt
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

Role = Literal["patient", "doctor", "staff"]
AppointmentStatusName = Literal["scheduled", "in_queue", "in_progress", "completed", "cancelled", "no_show"]
QueueStatusName = Literal["active", "paused", "closed"]
QueueEntryStatusName = Literal["waiting", "in_progress", "completed", "cancelled", "no_show"]

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class MessageOut(BaseModel):
    message: str


# ==================== USERS ====================

class UserOut(BaseModel):
    id: int
    email: str
    role: Role
    first_name: str
    last_name: str
    phone: Optional[str] = None
    date_of_birth: Optional[dt.date] = None
    address: Optional[str] = None
    hospital_id: Optional[int] = None


class AuthOut(UserOut):
    token: str


# ==================== HOSPITALS ====================

class HospitalOut(BaseModel):
    id: int
    name: str
    address: str
    latitude: float
    longitude: float
    phone: Optional[str] = None
    email: Optional[str] = None
    distance_km: Optional[float] = None


# ==================== DOCTORS ====================

class AvailabilityWindow(BaseModel):
    day: str
    start_time: str = Field(..., pattern=HHMM_PATTERN)
    end_time: str = Field(..., pattern=HHMM_PATTERN)
    is_available: bool = True


class Qualification(BaseModel):
    degree: str
    institution: Optional[str] = None
    year: Optional[int] = None


class DoctorProfileOut(BaseModel):
    id: int
    user_id: int
    specialization: str
    qualifications: List[Qualification] = []
    experience_years: int = 0
    consultation_fee: int = 0
    avg_consultation_time: int
    availability: List[AvailabilityWindow] = []
    languages: List[str] = []
    bio: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class DoctorOut(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: str
    hospital_id: Optional[int] = None
    hospital_name: Optional[str] = None
    profile: DoctorProfileOut
    distance_km: Optional[float] = None


class DoctorAvailabilityOut(BaseModel):
    doctor_id: int
    date: dt.date
    day: str
    windows: List[AvailabilityWindow]
    free_slots: List[str]


# ==================== APPOINTMENTS ====================

class AppointmentOut(BaseModel):
    id: int
    patient_id: int
    patient_name: str
    doctor_id: int
    doctor_name: str
    hospital_id: Optional[int] = None
    date: dt.date
    start_time: str = Field(..., pattern=HHMM_PATTERN)
    end_time: str = Field(..., pattern=HHMM_PATTERN)
    status: AppointmentStatusName
    queue_number: int
    estimated_wait_time: Optional[int] = None
    actual_wait_time: Optional[int] = None
    reason: Optional[str] = None
    symptoms: Optional[str] = None
    notes: Optional[str] = None
    prescription: Optional[str] = None
    follow_up_date: Optional[dt.date] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[dt.datetime] = None


# ==================== QUEUES ====================

class QueueEntryOut(BaseModel):
    id: int
    patient_id: int
    patient_name: str
    status: QueueEntryStatusName
    appointment_time: dt.datetime
    priority: int
    reason: str
    position: int
    estimated_wait_time: Optional[int] = None
    joined_at: Optional[dt.datetime] = None
    started_at: Optional[dt.datetime] = None
    completed_at: Optional[dt.datetime] = None


class QueueOut(BaseModel):
    id: int
    hospital_id: int
    hospital_name: str
    doctor_id: int
    doctor_name: str
    date: dt.date
    status: QueueStatusName
    max_patients: int
    version: int
    average_wait_time: int
    patients: List[QueueEntryOut]


# ==================== CHAT ====================

class ChatReplyOut(BaseModel):
    reply: str
    model: str
