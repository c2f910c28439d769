"""
Provider interfaces for the services a meal store talks to.

Each provider type defines a protocol that concrete implementations must follow:
- Inference (photo or text -> nutrition analysis)
- Health datastore (versioned nutrition upserts)

Concrete providers are auto-registered when this module is imported.
"""

from .base import (
    HealthStore,
    InferenceProvider,
    NutritionPayload,
    ProviderRegistry,
    extract_json_object,
    get_registry,
    parse_analysis,
)

# Import concrete providers to trigger registration
from . import gemini
from . import health

__all__ = [
    # Protocols
    "InferenceProvider",
    "HealthStore",
    # Data types
    "NutritionPayload",
    # Registry
    "ProviderRegistry",
    "get_registry",
    # Parsing
    "extract_json_object",
    "parse_analysis",
]
