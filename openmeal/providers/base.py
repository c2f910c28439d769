"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from ..errors import AnalysisFailure
from ..types import MealAnalysis


# -----------------------------------------------------------------------------
# Meal Analysis
# -----------------------------------------------------------------------------

@runtime_checkable
class InferenceProvider(Protocol):
    """
    Turns meal photos or descriptions into a structured nutrition analysis.

    Every method either returns a ``MealAnalysis`` or raises
    ``AnalysisFailure``; transport and parsing errors must be wrapped.
    Images are raw bytes (JPEG expected).
    """

    async def analyze_image(self, image: bytes, comment: str | None = None) -> MealAnalysis:
        """Analyze a single photo of a meal."""
        ...

    async def analyze_before_after(
        self,
        before: bytes,
        after: bytes,
        comment: str | None = None,
    ) -> MealAnalysis:
        """Analyze only what was eaten between two photos of the same meal."""
        ...

    async def analyze_text(self, comment: str) -> MealAnalysis:
        """Analyze a written description of a meal."""
        ...

    async def correct_analysis(
        self,
        current: MealAnalysis,
        comment: str,
        image: bytes | None = None,
    ) -> MealAnalysis:
        """Revise an existing analysis according to user feedback."""
        ...


# -----------------------------------------------------------------------------
# Health Datastore
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class NutritionPayload:
    """
    One nutrition entry as written to the external health datastore.

    Attributes:
        client_record_id: Stable id for upserts (the meal id)
        client_record_version: Strictly increasing per client_record_id
        start_time: Meal timestamp (ISO-8601)
        end_time: One minute after start_time
        name: Meal title, "Meal" when the analysis has none
        energy_kcal: Total calories
        protein_g: Total protein in grams
        carbs_g: Total carbohydrate in grams
        fat_g: Total fat in grams
    """
    client_record_id: str
    client_record_version: int
    start_time: str
    end_time: str
    name: str
    energy_kcal: float
    protein_g: float
    carbs_g: float
    fat_g: float

    def to_dict(self) -> dict:
        return {
            "clientRecordId": self.client_record_id,
            "clientRecordVersion": self.client_record_version,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "name": self.name,
            "energy": {"unit": "kilocalories", "value": self.energy_kcal},
            "protein": {"unit": "grams", "value": self.protein_g},
            "totalCarbohydrate": {"unit": "grams", "value": self.carbs_g},
            "totalFat": {"unit": "grams", "value": self.fat_g},
        }


@runtime_checkable
class HealthStore(Protocol):
    """
    External health datastore that accepts versioned nutrition upserts.

    A record written with (client_record_id, client_record_version) replaces
    any earlier version of the same id; an equal or lower version is ignored
    by the datastore.
    """

    async def has_write_permission(self) -> bool:
        """Whether nutrition writes are currently permitted."""
        ...

    async def request_permission(self) -> bool:
        """Ask for write permission. Returns True if granted."""
        ...

    async def upsert(self, payload: NutritionPayload) -> None:
        """Write one entry. Raises SyncError on failure."""
        ...


# -----------------------------------------------------------------------------
# Prompts
# -----------------------------------------------------------------------------

ANALYSIS_SCHEMA = """\
Reply with a single JSON object and nothing else:
{
  "title": "short name for the whole meal",
  "meal_items": [
    {"item_name": str, "estimated_serving_size": str (with units),
     "calories": number (kcal), "total_carbohydrate_g": number,
     "protein_g": number, "total_fat_g": number, "notes": str}
  ],
  "total_meal_nutritional_values": {
    "total_calories": number, "total_total_carbohydrate_g": number,
    "total_protein_g": number, "total_total_fat_g": number
  },
  "meal_insights": {"health_benefits": [str], "health_concerns": [str]}
}
Totals must equal the sum of the items. Give 0-4 short insights in each
list, at least one overall, favouring whole foods and flagging added sugar,
excess sodium and heavy processing."""

IMAGE_SYSTEM_PROMPT = f"""\
You are an expert nutritionist and food recognition specialist.
Identify every distinct food and drink in the photo, estimate each serving
size from visual cues (plate size, cutlery), and estimate calories,
carbohydrate, protein and fat for each item. Note assumptions in "notes".

{ANALYSIS_SCHEMA}"""

BEFORE_AFTER_SYSTEM_PROMPT = f"""\
You are an expert nutritionist and food recognition specialist.
You get two photos of the same meal: the first before eating, the second
showing what was left. Report ONLY what was consumed: items missing from
the second photo and the eaten share of partially finished items. Untouched
food is excluded. Explain the consumption estimate in each item's "notes".

{ANALYSIS_SCHEMA}"""

TEXT_SYSTEM_PROMPT = f"""\
You are an expert nutritionist. Turn the user's written description of a
meal into a nutrition breakdown. Infer implied ingredients and typical
preparation, assume moderate portions where none are given, and record
those assumptions in "notes". Choose a title that reflects the description.

{ANALYSIS_SCHEMA}"""

CORRECTION_SYSTEM_PROMPT = f"""\
You are an expert nutritionist correcting an existing meal analysis.
The user's comment is the source of truth: replace, add or resize items as
it says, then recalculate every affected item, the totals and the insights.
The original photo may be attached for context.

{ANALYSIS_SCHEMA}"""


def image_prompt(comment: str | None) -> str:
    text = "Analyze this meal image and provide nutritional information in the specified JSON format."
    if comment and comment.strip():
        text += f' The user has written the following comment: "{comment.strip()}"'
    return text


def before_after_prompt(comment: str | None) -> str:
    text = (
        "The first image shows the meal before eating and the second shows what remains. "
        "Provide nutritional information only for what was consumed."
    )
    if comment and comment.strip():
        text += f' The user has written the following comment: "{comment.strip()}"'
    return text


def text_prompt(comment: str) -> str:
    return f'Analyze this meal description: "{comment.strip()}"'


def correction_prompt(current: MealAnalysis, comment: str) -> str:
    return (
        "Please correct the following meal analysis based on my comment.\n\n"
        f"Current Analysis:\n{json.dumps(current.to_dict(), indent=2)}\n\n"
        f'User Comment:\n"{comment.strip()}"\n\n'
        "Generate a new, corrected JSON object based on this feedback."
    )


# Greedy: from the first '{' to the last '}', across newlines
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def extract_json_object(text: str | None) -> dict[str, Any]:
    """
    Pull the JSON object out of a model reply.

    Models often wrap the object in prose or code fences; everything outside
    the outermost braces is ignored.

    Raises:
        AnalysisFailure: No object found, or it does not parse
    """
    if not text:
        raise AnalysisFailure("Empty response from inference provider")
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        raise AnalysisFailure("No valid JSON found in response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise AnalysisFailure(f"Invalid JSON in response: {e}") from e
    if not isinstance(data, dict):
        raise AnalysisFailure("Response JSON is not an object")
    return data


def parse_analysis(text: str | None) -> MealAnalysis:
    """Extract and validate an analysis from a model reply."""
    return MealAnalysis.from_dict(extract_json_object(text))


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and can be instantiated from configuration.
    This allows the store configuration (TOML) to specify providers by name
    rather than requiring code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_inference("gemini", GeminiInference)

        # Later, from config:
        provider = registry.create_inference("gemini", {"model": "gemini-2.5-flash"})
    """

    def __init__(self):
        self._inference_providers: dict[str, type] = {}
        self._health_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load all provider modules."""
        if self._lazy_loaded:
            return

        self._lazy_loaded = True

        # Import provider modules to trigger registration
        from . import gemini  # noqa: F401
        from . import health  # noqa: F401

    # Registration methods

    def register_inference(self, name: str, provider_class: type) -> None:
        """Register an inference provider class."""
        self._inference_providers[name] = provider_class

    def register_health(self, name: str, provider_class: type) -> None:
        """Register a health datastore class."""
        self._health_providers[name] = provider_class

    # Factory methods

    @staticmethod
    def _create_provider(kind: str, name: str, providers: dict, params: dict | None):
        """Shared factory logic for all provider types."""
        if name not in providers:
            available = ", ".join(providers.keys()) or "none"
            raise ValueError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e
        except Exception as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}"
            ) from e

    def create_inference(self, name: str, params: dict | None = None) -> InferenceProvider:
        """Create an inference provider instance."""
        self._ensure_providers_loaded()
        return self._create_provider("inference", name, self._inference_providers, params)

    def create_health(self, name: str, params: dict | None = None) -> HealthStore | None:
        """Create a health datastore instance ("none" means no integration)."""
        if name == "none":
            return None
        self._ensure_providers_loaded()
        return self._create_provider("health", name, self._health_providers, params)

    # Introspection

    def list_inference_providers(self) -> list[str]:
        """List registered inference provider names."""
        self._ensure_providers_loaded()
        return list(self._inference_providers.keys())

    def list_health_providers(self) -> list[str]:
        """List registered health datastore names."""
        self._ensure_providers_loaded()
        return list(self._health_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
