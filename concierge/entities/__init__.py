from concierge.entities.resolver import EntityResolver
from concierge.entities.sources import ContextSource
from concierge.entities.types import (
    EntityResolutionError,
    EntityType,
    ExtractedEntity,
    ResolutionErrorCode,
    ResolutionResult,
    ResolvedEntity,
)

__all__ = [
    "ContextSource",
    "EntityResolutionError",
    "EntityResolver",
    "EntityType",
    "ExtractedEntity",
    "ResolutionErrorCode",
    "ResolutionResult",
    "ResolvedEntity",
]
