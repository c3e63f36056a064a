"""
Nutrition Assistant Service

Thin wrapper around the google.genai SDK. The interaction guard decides
whether a call may happen; this service only produces the reply.
"""

import asyncio
import logging
from typing import Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from app.config.settings import Settings, get_settings
from app.domain.chat import ChatMessage
from app.infrastructure.exceptions import AIServiceError, ConfigurationError


logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You are NutriChat, a nutrition assistant. Give practical, evidence-based "
    "guidance on meals, macronutrients and eating habits. You are not a doctor: "
    "recommend a professional for medical conditions, eating disorders or "
    "medication questions. Answer in the language the user writes in."
)


class AssistantService:
    """
    Gemini-backed chat completion.

    Features:
    - One shared genai.Client
    - Blocking SDK calls moved off the event loop
    """

    MAX_OUTPUT_TOKENS = 2048
    TEMPERATURE = 0.7

    def __init__(self, client: Optional[genai.Client] = None, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self._model = settings.gemini_model

        if client is None:
            if not settings.google_api_key:
                raise ConfigurationError(
                    "Missing GOOGLE_API_KEY environment variable",
                    missing_keys=["GOOGLE_API_KEY"]
                )
            client = genai.Client(api_key=settings.google_api_key)
        self._client = client

        logger.info(f"AssistantService initialized with model: {self._model}")

    @staticmethod
    def _to_contents(messages: list[ChatMessage]) -> list[types.Content]:
        return [
            types.Content(
                role="model" if message.role == "assistant" else "user",
                parts=[types.Part.from_text(text=message.content)],
            )
            for message in messages
        ]

    async def reply(self, messages: list[ChatMessage]) -> str:
        """
        Generate the assistant's next message for a conversation.

        Raises:
            AIServiceError: the model call failed or returned nothing.
        """
        try:
            response = await asyncio.to_thread(
                lambda: self._client.models.generate_content(
                    model=self._model,
                    contents=self._to_contents(messages),
                    config=types.GenerateContentConfig(
                        system_instruction=SYSTEM_PROMPT,
                        temperature=self.TEMPERATURE,
                        max_output_tokens=self.MAX_OUTPUT_TOKENS,
                    ),
                )
            )
        except genai_errors.APIError as e:
            logger.error(f"Gemini generate_content failed: {e}")
            raise AIServiceError(
                "Assistant is unavailable",
                model=self._model,
                operation="generate_content",
                original_error=e,
            ) from e

        text = response.text
        if not text:
            raise AIServiceError(
                "Assistant returned an empty reply",
                model=self._model,
                operation="generate_content",
            )
        return text


_assistant_service_instance: Optional[AssistantService] = None


def get_assistant_service() -> AssistantService:
    """Get or create the assistant service singleton."""
    global _assistant_service_instance
    if _assistant_service_instance is None:
        _assistant_service_instance = AssistantService()
    return _assistant_service_instance
