"""
Chat Routes

The assistant endpoint. Every call passes through the InteractionGuard:
denied requests never reach the model, successful ones consume one
interaction of the day.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.dependencies import (
    AssistantService,
    get_assistant_service,
    get_current_user_id,
    get_interaction_guard,
)
from app.domain.chat import ChatRequest, ChatResponse, MessageRole
from app.infrastructure.services.usage_service import InteractionGuard


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    user_id: str = Depends(get_current_user_id),
    guard: InteractionGuard = Depends(get_interaction_guard),
    assistant: AssistantService = Depends(get_assistant_service),
):
    """
    Send the conversation to the assistant and return its reply.

    429 with reset_time when the user has no quota left (or no plan).
    """
    if request.messages[-1].role != MessageRole.USER:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The last message must come from the user",
        )

    reply = await guard.run(user_id, lambda: assistant.reply(request.messages))
    return ChatResponse(reply=reply)
