"""Entity resolution data models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Literal, TypeVar

T = TypeVar("T")


class EntityType(str, Enum):
    PERSON = "person"
    EVENT = "event"
    TASK = "task"
    EMAIL = "email"
    PLACE = "place"
    DEADLINE = "deadline"
    ROUTINE = "routine"
    OPEN_LOOP = "open_loop"
    PROJECT = "project"
    NOTE = "note"

    @classmethod
    def parse(cls, value: str) -> EntityType | None:
        """Map an extracted type string to a resolvable type, or None."""
        if value == "location":
            return cls.PLACE
        try:
            return cls(value)
        except ValueError:
            return None


ResolutionStatus = Literal["resolved", "ambiguous", "not_found"]
MatchMethod = Literal["exact", "fuzzy", "semantic"]


@dataclass(frozen=True)
class ExtractedEntity:
    """A span the upstream language model believes names a domain object."""
    type: str
    text: str
    raw_value: Any = None
    needs_resolution: bool = True


@dataclass(frozen=True)
class ResolutionCandidate:
    id: str
    label: str
    confidence: float
    match_reason: str = ""


@dataclass(frozen=True)
class EntityMatch(Generic[T]):
    id: str
    type: EntityType
    record: T
    confidence: float
    match_method: MatchMethod


@dataclass(frozen=True)
class ResolvedEntity(Generic[T]):
    """Outcome of resolving one extracted entity.

    ``match`` is set only when resolved, ``candidates`` only when ambiguous.
    """
    extracted: ExtractedEntity
    status: ResolutionStatus
    confidence: float
    match: EntityMatch[T] | None = None
    candidates: tuple[ResolutionCandidate, ...] | None = None
    error: str | None = None


@dataclass(frozen=True)
class ResolutionResult:
    entities: tuple[ResolvedEntity, ...] = ()
    resolved: tuple[ResolvedEntity, ...] = ()
    ambiguous: tuple[ResolvedEntity, ...] = ()
    not_found: tuple[ResolvedEntity, ...] = ()
    needs_clarification: bool = False
    clarification_questions: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Hints
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def contains(self, moment: datetime | None) -> bool:
        return moment is not None and self.start <= moment <= self.end


@dataclass(frozen=True)
class PersonHints:
    email: str | None = None
    company: str | None = None
    context: str | None = None


@dataclass(frozen=True)
class EventHints:
    date_range: DateRange | None = None
    location: str | None = None


@dataclass(frozen=True)
class TaskHints:
    status: str | None = None
    priority: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class EmailHints:
    sender: str | None = None
    date_range: DateRange | None = None
    include_drafts: bool = False
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class PlaceHints:
    place_type: str | None = None
    city: str | None = None


@dataclass(frozen=True)
class DeadlineHints:
    type: str | None = None
    status: str | None = None
    related_entity_id: str | None = None


@dataclass(frozen=True)
class RoutineHints:
    type: str | None = None
    category: str | None = None


@dataclass(frozen=True)
class OpenLoopHints:
    type: str | None = None
    priority: str | None = None
    related_person_id: str | None = None


@dataclass(frozen=True)
class ProjectHints:
    type: str | None = None
    status: str | None = None
    priority: str | None = None


@dataclass(frozen=True)
class NoteHints:
    type: str | None = None
    category: str | None = None
    search_content: bool = True
    pinned_only: bool = False


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ResolutionErrorCode(str, Enum):
    RESOLUTION_FAILED = "RESOLUTION_FAILED"
    INVALID_ENTITY_TYPE = "INVALID_ENTITY_TYPE"
    SEARCH_ERROR = "SEARCH_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"


class EntityResolutionError(Exception):
    """Raised by resolvers; callers branch on ``code``."""

    def __init__(
        self,
        code: ResolutionErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"EntityResolutionError({self.code.value}, {str(self)!r})"
