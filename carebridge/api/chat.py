from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Literal
import logging
import httpx

from .. import config
from ..database.models import User
from ..schemas import ChatReplyOut
from .auth import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["Chat"])

ASSISTANT_PROMPT = (
    "You are a medical assistant for a hospital appointment service. "
    "Answer general health questions clearly and briefly, and tell the user "
    "to see a doctor for diagnosis or treatment."
)

REPORT_PROMPT = (
    "You explain medical lab reports to patients. Summarize the findings, "
    "flag values outside their reference ranges and suggest questions to "
    "ask the doctor. Do not give a diagnosis."
)

# ==================== PYDANTIC MODELS ====================

class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1, max_length=4000)


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000)
    history: List[ChatMessage] = Field(default_factory=list, max_length=20)


class AnalyzeReportRequest(BaseModel):
    report_text: str = Field(..., min_length=1, max_length=20000)

# ==================== HELPER FUNCTIONS ====================

async def request_completion(messages: List[dict]) -> str:
    """Send a chat-completions request upstream and return the reply text"""
    if not config.LLM_API_KEY:
        raise HTTPException(status_code=503, detail="Chat assistant is not configured")

    payload = {"model": config.LLM_MODEL, "messages": messages}
    headers = {"Authorization": f"Bearer {config.LLM_API_KEY}"}

    try:
        async with httpx.AsyncClient(timeout=config.LLM_TIMEOUT_SECONDS) as client:
            response = await client.post(config.LLM_API_URL, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
    except httpx.TimeoutException:
        logger.warning("Chat completion timed out after %ss", config.LLM_TIMEOUT_SECONDS)
        raise HTTPException(status_code=502, detail="Chat assistant timed out")
    except httpx.HTTPStatusError as e:
        logger.warning("Chat completion failed with status %s", e.response.status_code)
        raise HTTPException(status_code=502, detail="Chat assistant is unavailable")
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Chat completion failed: %s", e)
        raise HTTPException(status_code=502, detail="Chat assistant is unavailable")

    try:
        return data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        logger.warning("Unexpected chat completion payload")
        raise HTTPException(status_code=502, detail="Chat assistant returned an invalid response")

# ==================== API ENDPOINTS ====================

@router.post("", response_model=ChatReplyOut)
async def chat(
    request: ChatRequest,
    current_user: User = Depends(get_current_user)
):
    messages = [{"role": "system", "content": ASSISTANT_PROMPT}]
    messages += [m.model_dump() for m in request.history]
    messages.append({"role": "user", "content": request.message})

    reply = await request_completion(messages)
    return {"reply": reply, "model": config.LLM_MODEL}


@router.post("/analyze-report", response_model=ChatReplyOut)
async def analyze_report(
    request: AnalyzeReportRequest,
    current_user: User = Depends(get_current_user)
):
    """Plain-language explanation of a pasted lab report"""
    messages = [
        {"role": "system", "content": REPORT_PROMPT},
        {"role": "user", "content": request.report_text},
    ]
    reply = await request_completion(messages)
    logger.info("Report analysis for user %s", current_user.id)
    return {"reply": reply, "model": config.LLM_MODEL}
