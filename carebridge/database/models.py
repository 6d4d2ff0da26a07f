"""
CareBridge - Database Models
Users, hospitals, doctor profiles, appointments and per-doctor daily queues
"""
from sqlalchemy import (
    Column, Integer, String, ForeignKey, DateTime, Text, Boolean, Time, Date, Float, JSON,
    Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from .connection import Base
import enum


# ============================================
# ENUMS
# ============================================

class UserRole(str, enum.Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    STAFF = "staff"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    IN_QUEUE = "in_queue"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class QueueStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


class QueueEntryStatus(str, enum.Enum):
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# Allowed predecessors per target status
APPOINTMENT_TRANSITIONS = {
    AppointmentStatus.IN_QUEUE: [AppointmentStatus.SCHEDULED],
    AppointmentStatus.IN_PROGRESS: [AppointmentStatus.SCHEDULED, AppointmentStatus.IN_QUEUE],
    AppointmentStatus.COMPLETED: [AppointmentStatus.IN_PROGRESS],
    AppointmentStatus.CANCELLED: [AppointmentStatus.SCHEDULED, AppointmentStatus.IN_QUEUE],
    AppointmentStatus.NO_SHOW: [AppointmentStatus.SCHEDULED, AppointmentStatus.IN_QUEUE],
}

QUEUE_ENTRY_TRANSITIONS = {
    QueueEntryStatus.IN_PROGRESS: [QueueEntryStatus.WAITING],
    QueueEntryStatus.COMPLETED: [QueueEntryStatus.IN_PROGRESS],
    QueueEntryStatus.CANCELLED: [QueueEntryStatus.WAITING],
    QueueEntryStatus.NO_SHOW: [QueueEntryStatus.WAITING, QueueEntryStatus.IN_PROGRESS],
}

# Statuses counted as "ahead" when estimating appointment waits
APPOINTMENT_WAITING_STATUSES = [AppointmentStatus.SCHEDULED.value, AppointmentStatus.IN_QUEUE.value]
APPOINTMENT_TERMINAL_STATUSES = [
    AppointmentStatus.COMPLETED.value,
    AppointmentStatus.CANCELLED.value,
    AppointmentStatus.NO_SHOW.value,
]
QUEUE_ENTRY_ACTIVE_STATUSES = [QueueEntryStatus.WAITING.value, QueueEntryStatus.IN_PROGRESS.value]


# ============================================
# USER MANAGEMENT
# ============================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(100), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=UserRole.PATIENT.value)  # patient | doctor | staff

    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    phone = Column(String(20))
    date_of_birth = Column(Date)
    address = Column(Text)

    # Staff and doctors belong to a hospital
    hospital_id = Column(Integer, ForeignKey("hospitals.id"), nullable=True, index=True)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    hospital = relationship("Hospital", back_populates="members")
    doctor_profile = relationship("DoctorProfile", back_populates="user", uselist=False, cascade="all, delete-orphan")
    audit_logs = relationship("AuditLog", back_populates="user")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# ============================================
# HOSPITAL DIRECTORY
# ============================================

class Hospital(Base):
    __tablename__ = "hospitals"
    __table_args__ = (
        Index("ix_hospitals_location", "latitude", "longitude"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    address = Column(Text, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    phone = Column(String(20))
    email = Column(String(100))
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    members = relationship("User", back_populates="hospital")
    queues = relationship("Queue", back_populates="hospital")


# ============================================
# DOCTOR PROFILE
# ============================================

class DoctorProfile(Base):
    __tablename__ = "doctor_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    specialization = Column(String(100), nullable=False, index=True)
    qualifications = Column(JSON, default=list)  # [{"degree", "institution", "year"}]
    experience_years = Column(Integer, default=0)
    consultation_fee = Column(Integer, default=0)
    avg_consultation_time = Column(Integer, default=15)  # minutes

    # [{"day": "Monday", "start_time": "09:00", "end_time": "17:00", "is_available": true}]
    availability = Column(JSON, default=list)
    languages = Column(JSON, default=list)
    bio = Column(Text)

    # Optional practice location, hospital location is used when unset
    latitude = Column(Float)
    longitude = Column(Float)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    user = relationship("User", back_populates="doctor_profile")


# ============================================
# APPOINTMENTS
# ============================================

class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        UniqueConstraint("doctor_id", "date", "queue_number", name="uq_appointments_doctor_day_number"),
        Index("ix_appointments_doctor_date_status", "doctor_id", "date", "status"),
        Index("ix_appointments_patient_date", "patient_id", "date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    doctor_profile_id = Column(Integer, ForeignKey("doctor_profiles.id"), nullable=False)
    hospital_id = Column(Integer, ForeignKey("hospitals.id"), nullable=True)

    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(String(20), nullable=False, default=AppointmentStatus.SCHEDULED.value)
    queue_number = Column(Integer, nullable=False)

    # "<doctor_id>:<date>:<HH:MM>" while the slot is held, NULL once released
    slot_key = Column(String(64), unique=True, nullable=True)

    reason = Column(Text)
    symptoms = Column(Text)
    notes = Column(Text)
    prescription = Column(Text)
    follow_up_date = Column(Date)

    queued_at = Column(DateTime)
    started_at = Column(DateTime)
    actual_wait_time = Column(Integer)  # minutes

    cancellation_reason = Column(String(255))
    cancelled_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("User", foreign_keys=[doctor_id])
    doctor_profile = relationship("DoctorProfile")
    hospital = relationship("Hospital")


# ============================================
# QUEUES
# ============================================

class Queue(Base):
    __tablename__ = "queues"
    __table_args__ = (
        UniqueConstraint("hospital_id", "doctor_id", "date", name="uq_queues_hospital_doctor_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    hospital_id = Column(Integer, ForeignKey("hospitals.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default=QueueStatus.ACTIVE.value)
    max_patients = Column(Integer, nullable=False, default=20)

    # Bumped by every mutation; writers guard on the value they read
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    hospital = relationship("Hospital", back_populates="queues")
    doctor = relationship("User")
    entries = relationship(
        "QueueEntry",
        back_populates="queue",
        cascade="all, delete-orphan",
        order_by="QueueEntry.position",
    )


class QueueEntry(Base):
    __tablename__ = "queue_entries"

    id = Column(Integer, primary_key=True, index=True)
    queue_id = Column(Integer, ForeignKey("queues.id", ondelete="CASCADE"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=QueueEntryStatus.WAITING.value)
    appointment_time = Column(DateTime, nullable=False)
    priority = Column(Integer, nullable=False, default=0)  # higher number is served first
    reason = Column(Text, nullable=False)
    position = Column(Integer, nullable=False)

    joined_at = Column(DateTime, default=datetime.now)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Relationships
    queue = relationship("Queue", back_populates="entries")
    patient = relationship("User")


# ============================================
# AUDIT
# ============================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'))
    action = Column(String(100))
    entity_type = Column(String(50))
    entity_id = Column(String(50))
    details = Column(JSON)
    created_at = Column(DateTime, default=datetime.now)

    # Relationships
    user = relationship("User", back_populates="audit_logs")
