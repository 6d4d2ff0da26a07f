from fastapi import APIRouter, WebSocket, WebSocketDisconnect, HTTPException, Query, status
from typing import Optional
import logging

from ..database.connection import SessionLocal
from ..database.models import User, Hospital, UserRole
from ..realtime import manager, hospital_channel, patient_channel
from .auth import user_from_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["Realtime"])

# ==================== HELPER FUNCTIONS ====================

def authorize_subscription(token: Optional[str], hospital_id: Optional[int] = None,
                           patient_id: Optional[int] = None) -> Optional[User]:
    """
    Resolve the query-string token and check the caller may watch the channel.
    Returns None when the subscription must be refused.
    """
    if not token:
        return None

    db = SessionLocal()
    try:
        try:
            user = user_from_token(token, db)
        except HTTPException:
            return None

        if hospital_id is not None:
            if not db.query(Hospital.id).filter(Hospital.id == hospital_id).first():
                return None

        if patient_id is not None:
            if user.role == UserRole.PATIENT.value and user.id != patient_id:
                return None
        return user
    finally:
        db.close()


async def serve(websocket: WebSocket, channel: str):
    """Hold the subscription open until the client goes away"""
    await manager.connect(websocket, channel)
    try:
        while True:
            # Subscribers only listen; anything they send is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket, channel)
        logger.debug("Subscriber left %s", channel)

# ==================== WEBSOCKET ENDPOINTS ====================

@router.websocket("/hospitals/{hospital_id}")
async def hospital_updates(
    websocket: WebSocket,
    hospital_id: int,
    token: Optional[str] = Query(None)
):
    """Live queue board of a hospital"""
    user = authorize_subscription(token, hospital_id=hospital_id)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    logger.info("User %s subscribed to hospital %s", user.id, hospital_id)
    await serve(websocket, hospital_channel(hospital_id))


@router.websocket("/patients/{patient_id}")
async def patient_updates(
    websocket: WebSocket,
    patient_id: int,
    token: Optional[str] = Query(None)
):
    """Appointment and queue events for one patient"""
    user = authorize_subscription(token, patient_id=patient_id)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    logger.info("User %s subscribed to patient %s", user.id, patient_id)
    await serve(websocket, patient_channel(patient_id))
