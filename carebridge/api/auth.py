from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from pydantic import BaseModel, Field, EmailStr
from typing import Literal, Optional
from datetime import datetime, date, timedelta, timezone
import logging
import jwt
import bcrypt

from .. import config
from ..database.connection import get_db
from ..database.models import User, Hospital, DoctorProfile, UserRole
from ..schemas import AuthOut, UserOut
from .audit import log_action

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])
security = HTTPBearer(auto_error=False)

# ==================== PYDANTIC MODELS ====================

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    role: Literal["patient", "doctor", "staff"] = "patient"
    phone: Optional[str] = Field(None, max_length=20)
    date_of_birth: Optional[date] = None
    address: Optional[str] = None
    hospital_id: Optional[int] = None
    # Doctor registrations only
    specialization: Optional[str] = Field(None, max_length=100)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UpdateUserRequest(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    date_of_birth: Optional[date] = None
    address: Optional[str] = None

# ==================== HELPER FUNCTIONS ====================

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode(), hashed_password.encode())
    except ValueError:
        return False


def create_access_token(data: dict) -> str:
    """Create JWT access token"""
    now = datetime.now(timezone.utc)
    to_encode = data.copy()
    to_encode.update({
        "exp": now + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
        "iat": now,
        "type": "access"
    })
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate JWT token"""
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired"
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized, invalid token"
        )


def user_from_token(token: str, db: Session) -> User:
    """Resolve a bearer token to an active user or raise 401"""
    payload = decode_token(token)

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )

    user_id = payload.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload"
        )

    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized, user not found"
        )
    return user


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "role": user.role,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "phone": user.phone,
        "date_of_birth": user.date_of_birth,
        "address": user.address,
        "hospital_id": user.hospital_id,
    }


def auth_response(user: User) -> dict:
    token = create_access_token(data={"user_id": user.id, "role": user.role})
    return {"token": token, **serialize_user(user)}

# ==================== DEPENDENCIES ====================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Dependency to get current authenticated user
    Use this in protected routes: current_user: User = Depends(get_current_user)
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized, no token provided"
        )
    return user_from_token(credentials.credentials, db)


def require_roles(*roles: str):
    """Dependency factory gating a route to the given roles"""
    async def checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Not authorized, role {current_user.role} is not allowed"
            )
        return current_user
    return checker


def ensure_hospital_member(user: User, hospital_id: Optional[int]) -> None:
    """403 unless the user is affiliated with the given hospital"""
    if hospital_id is None or user.hospital_id != hospital_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized for this hospital"
        )

# ==================== API ENDPOINTS ====================

@router.post("/register", response_model=AuthOut, status_code=201)
async def register(
    request: RegisterRequest,
    db: Session = Depends(get_db)
):
    """Create an account and return a token with the user's fields"""
    email = request.email.lower()

    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=400, detail="User already exists")

    if request.hospital_id is not None:
        if not db.query(Hospital).filter(Hospital.id == request.hospital_id).first():
            raise HTTPException(status_code=404, detail="Hospital not found")

    user = User(
        email=email,
        password_hash=hash_password(request.password),
        role=request.role,
        first_name=request.first_name,
        last_name=request.last_name,
        phone=request.phone,
        date_of_birth=request.date_of_birth,
        address=request.address,
        hospital_id=request.hospital_id,
    )
    db.add(user)

    if request.role == UserRole.DOCTOR.value:
        user.doctor_profile = DoctorProfile(
            specialization=request.specialization or "General",
            qualifications=[],
            availability=[],
            languages=[],
            avg_consultation_time=config.DEFAULT_CONSULTATION_MINUTES,
        )

    try:
        db.flush()
        log_action(
            db=db,
            user_id=user.id,
            action="USER_REGISTERED",
            entity_type="user",
            entity_id=user.id,
            details={"role": user.role}
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="User already exists")

    db.refresh(user)
    logger.info("Registered %s user %s", user.role, user.id)
    return auth_response(user)


@router.post("/login", response_model=AuthOut)
async def login(
    request: LoginRequest,
    db: Session = Depends(get_db)
):
    user = db.query(User).filter(User.email == request.email.lower()).first()

    if not user or not verify_password(request.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is disabled")

    return auth_response(user)


@router.get("/me", response_model=UserOut)
async def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    return serialize_user(current_user)


@router.put("/profile", response_model=UserOut)
async def update_profile(
    request: UpdateUserRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in changes.items():
        setattr(current_user, field, value)

    log_action(
        db=db,
        user_id=current_user.id,
        action="PROFILE_UPDATED",
        entity_type="user",
        entity_id=current_user.id,
        details={"fields": sorted(changes)}
    )
    db.commit()
    db.refresh(current_user)
    return serialize_user(current_user)
