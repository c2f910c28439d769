"""
Meal analysis using Google's Gemini API.
"""

import logging
import os

from ..errors import AnalysisFailure
from ..types import MealAnalysis
from .base import (
    BEFORE_AFTER_SYSTEM_PROMPT,
    CORRECTION_SYSTEM_PROMPT,
    IMAGE_SYSTEM_PROMPT,
    TEXT_SYSTEM_PROMPT,
    before_after_prompt,
    correction_prompt,
    get_registry,
    image_prompt,
    parse_analysis,
    text_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"
IMAGE_MIME_TYPE = "image/jpeg"


def create_gemini_client(api_key: str | None = None):
    """
    Build a google-genai client.

    Authentication (checked in priority order):
    1. api_key parameter (Google AI Studio)
    2. GOOGLE_CLOUD_PROJECT env var (Vertex AI with ADC)
    3. GEMINI_API_KEY or GOOGLE_API_KEY (Google AI Studio)
    """
    from google import genai

    if api_key:
        return genai.Client(api_key=api_key)

    project = os.environ.get("GOOGLE_CLOUD_PROJECT")
    if project:
        location = os.environ.get("GOOGLE_CLOUD_LOCATION", "us-central1")
        return genai.Client(vertexai=True, project=project, location=location)

    env_key = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
    if env_key:
        return genai.Client(api_key=env_key)

    raise ValueError(
        "Gemini API key not found. Set GEMINI_API_KEY (or GOOGLE_API_KEY), "
        "or GOOGLE_CLOUD_PROJECT for Vertex AI."
    )


class GeminiInference:
    """
    Inference provider using Google's Gemini API.

    Each call sends one system instruction plus the prompt text and any
    photos as inline JPEG parts, then extracts the JSON object from the
    reply. Any failure (network, quota, unparseable reply) surfaces as
    ``AnalysisFailure``.

    Default model is gemini-2.5-flash.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: str | None = None,
        temperature: float | None = None,
    ):
        self.model = model
        self.temperature = temperature
        self._client = create_gemini_client(api_key)

    async def _generate(self, system: str, parts: list, what: str) -> MealAnalysis:
        from google.genai import types as genai_types

        config = genai_types.GenerateContentConfig(
            system_instruction=system,
            temperature=self.temperature,
        )
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=parts,
                config=config,
            )
            return parse_analysis(response.text)
        except Exception as e:
            logger.warning("Gemini %s failed: %s", what, e)
            raise AnalysisFailure(f"Failed to analyze {what} with Gemini API") from e

    @staticmethod
    def _image_part(data: bytes):
        from google.genai import types as genai_types

        return genai_types.Part.from_bytes(data=data, mime_type=IMAGE_MIME_TYPE)

    async def analyze_image(self, image: bytes, comment: str | None = None) -> MealAnalysis:
        return await self._generate(
            IMAGE_SYSTEM_PROMPT,
            [image_prompt(comment), self._image_part(image)],
            "image",
        )

    async def analyze_before_after(
        self,
        before: bytes,
        after: bytes,
        comment: str | None = None,
    ) -> MealAnalysis:
        return await self._generate(
            BEFORE_AFTER_SYSTEM_PROMPT,
            [before_after_prompt(comment), self._image_part(before), self._image_part(after)],
            "before/after images",
        )

    async def analyze_text(self, comment: str) -> MealAnalysis:
        if not comment or not comment.strip():
            raise AnalysisFailure("No meal description provided")
        return await self._generate(TEXT_SYSTEM_PROMPT, [text_prompt(comment)], "meal description")

    async def correct_analysis(
        self,
        current: MealAnalysis,
        comment: str,
        image: bytes | None = None,
    ) -> MealAnalysis:
        parts: list = [correction_prompt(current, comment)]
        if image:
            parts.append(self._image_part(image))
        return await self._generate(CORRECTION_SYSTEM_PROMPT, parts, "correction")


class NullInference:
    """
    Placeholder used when no inference provider is configured.

    Every call fails, so pending meals move to the error state and can be
    retried once a provider is set up.
    """

    def __init__(self, **kwargs):
        pass

    async def _fail(self) -> MealAnalysis:
        raise AnalysisFailure(
            "No inference provider configured. Set GEMINI_API_KEY or edit [inference] in openmeal.toml."
        )

    async def analyze_image(self, image: bytes, comment: str | None = None) -> MealAnalysis:
        return await self._fail()

    async def analyze_before_after(self, before: bytes, after: bytes, comment: str | None = None) -> MealAnalysis:
        return await self._fail()

    async def analyze_text(self, comment: str) -> MealAnalysis:
        return await self._fail()

    async def correct_analysis(self, current: MealAnalysis, comment: str, image: bytes | None = None) -> MealAnalysis:
        return await self._fail()


# Register providers
_registry = get_registry()
_registry.register_inference("gemini", GeminiInference)
_registry.register_inference("none", NullInference)
