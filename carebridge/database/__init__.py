# Database Package - Centralized imports
# Allows easy importing of models, connection utilities, and ORM objects

from .connection import (
    engine,
    Base,
    SessionLocal,
    get_db,
)

from .models import (
    # Enums
    UserRole,
    AppointmentStatus,
    QueueStatus,
    QueueEntryStatus,

    # User & Directory Models
    User,
    Hospital,
    DoctorProfile,

    # Scheduling Models
    Appointment,
    Queue,
    QueueEntry,

    # Audit
    AuditLog,
)

__all__ = [
    # Connection
    "engine",
    "Base",
    "SessionLocal",
    "get_db",

    # Enums
    "UserRole",
    "AppointmentStatus",
    "QueueStatus",
    "QueueEntryStatus",

    # User & Directory
    "User",
    "Hospital",
    "DoctorProfile",

    # Scheduling
    "Appointment",
    "Queue",
    "QueueEntry",

    # Audit
    "AuditLog",
]
