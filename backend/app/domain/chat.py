"""
Chat Domain Models for NutriChat

Request/response schemas of the guarded assistant endpoint.
"""

from enum import Enum
from typing import List

from pydantic import BaseModel, Field


class MessageRole(str, Enum):
    """Role of the message sender."""
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """One turn of the conversation."""
    role: MessageRole
    content: str = Field(..., min_length=1, max_length=8000)


class ChatRequest(BaseModel):
    """Conversation so far; the last message must come from the user."""
    messages: List[ChatMessage] = Field(..., min_length=1, max_length=50)


class ChatResponse(BaseModel):
    reply: str
