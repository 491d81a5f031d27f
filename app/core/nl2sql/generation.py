import logging
from abc import ABC, abstractmethod

from google import genai
from google.genai import types

from app.core.config import settings
from app.core.nl2sql.errors import GenerationError

logger = logging.getLogger(__name__)


class TextGenerator(ABC):
    """Turns a prompt into free-form text."""

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """Return generated text or raise GenerationError."""


class GeminiGenerator(TextGenerator):
    """
    TextGenerator backed by Google Gemini (google-genai SDK).

    A missing API key does not stop the service from starting; every call
    then fails with GenerationError and is recorded as an error message.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float = 0.1,
        max_output_tokens: int = 2048,
    ):
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._client = genai.Client(api_key=api_key) if api_key else None

    @classmethod
    def from_settings(cls) -> "GeminiGenerator":
        return cls(
            api_key=settings.GEMINI_API_KEY,
            model=settings.GEMINI_MODEL,
            temperature=settings.GEMINI_TEMPERATURE,
            max_output_tokens=settings.GEMINI_MAX_TOKENS,
        )

    async def generate(self, prompt: str) -> str:
        if self._client is None:
            raise GenerationError("GEMINI_API_KEY is not set")

        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    temperature=self.temperature,
                    max_output_tokens=self.max_output_tokens,
                ),
            )
        except Exception as error:
            logger.error(f"Gemini request failed: {error}")
            raise GenerationError(str(error)) from error

        text = (response.text or "").strip()
        if not text:
            raise GenerationError("no response from model")
        return text
