"""
api/message.py

Conversation turn endpoint.

Endpoints:
  - POST /message: Receives a user message, runs it through the conversation
                   orchestrator (load state, stage pipeline, persist) and
                   returns the composed reply with turn metadata.

Pipeline and storage failures are converted into a standardized error JSON
with HTTP 500 and no reply, so clients can always parse the response body.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from api import get_app_context
from core.context import AppContext
from shared.errors import GenerationError, PipelineError, StorageError
from shared.utils import preview

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_MESSAGE = "I apologize, but I encountered an unexpected issue processing your message. Please try again."


class MessageRequest(BaseModel):
    """
    Request payload for one conversation turn.

    Fields:
        user_id (str): Owner of the conversation.
        message (str): The user's message.
        conversation_id (str, optional): Conversation to continue; the user's
            most recent active conversation is used when omitted.
        force_new (bool): Start a new conversation.
    """

    user_id: str = Field(..., min_length=1, description="User identifier")
    message: str = Field(..., min_length=1, description="User message")
    conversation_id: Optional[str] = Field(None, description="Conversation to continue")
    force_new: bool = Field(False, description="Start a new conversation")


class MessageResponse(BaseModel):
    type: str = "text"
    reply: str
    conversation_id: str
    message_id: str
    mode: str
    modes_used: List[str]
    steering_hints: Optional[Dict[str, Any]] = None
    processing_time_ms: float


@router.post("/message", response_model=MessageResponse)
async def handle_message(req: MessageRequest, context: AppContext = Depends(get_app_context)):
    """
    Process one user message and return the assistant's reply.

    Args:
        req (MessageRequest): The turn request.
        context (AppContext): Injected application context.

    Returns:
        MessageResponse | JSONResponse: The turn result, or an error payload
            with HTTP 500 when the pipeline or storage failed.
    """
    logger.info(
        f"[handle_message] Received message for user: {req.user_id} - Message: '{preview(req.message)}'",
        extra={'conversation_id': req.conversation_id or 'new'}
    )

    try:
        result = await context.orchestrator.process_message(
            user_id=req.user_id,
            message=req.message,
            conversation_id=req.conversation_id,
            force_new=req.force_new,
        )
    except (PipelineError, StorageError, GenerationError) as e:
        logger.error(f"[handle_message] Turn failed for user {req.user_id}: {e}", exc_info=True)
        return JSONResponse(
            content={
                "type": "error",
                "message": ERROR_MESSAGE,
                "error": type(e).__name__,
                "conversation_id": req.conversation_id,
            },
            status_code=500,
        )

    return MessageResponse(type="text", **result.to_dict())
