"""AI API - one-shot prompt to the assistant."""

import logging

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import PlainTextResponse

from sparkchat.auth import AuthorizedUser
from sparkchat.libs.ai_orchestrator import AIOrchestrator, AIServiceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai", tags=["ai"])

orchestrator = AIOrchestrator()


@router.get("/get-result", response_class=PlainTextResponse)
async def get_result(user: AuthorizedUser, prompt: str = Query(min_length=1)):
    """
    Ask the assistant a single question.

    Returns the raw reply, a JSON document with `text` and an optional
    `fileTree`, as plain text.
    """
    try:
        return await orchestrator.generate_result(prompt)
    except AIServiceError as e:
        logger.error("AI result for %s failed: %s", user.email, e)
        raise HTTPException(status_code=502, detail="AI service unavailable")
