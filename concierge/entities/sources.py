"""Context collaborator interface consumed by the entity resolver."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from concierge.entities.records import (
    Deadline,
    Email,
    Event,
    Note,
    OpenLoop,
    Person,
    Place,
    Project,
    Routine,
    SemanticMatch,
    Task,
)
from concierge.entities.types import DateRange


class ContextSource(ABC):
    """Read access to a user's domain records.

    Lexical ``search_*`` methods do keyword matching against the primary
    store; ``search_context`` is embedding search across entity types. All
    methods are scoped to ``user_id``.
    """

    @abstractmethod
    async def find_person_by_email(self, user_id: str, email: str) -> Person | None:
        """Exact, case-insensitive lookup on the stored email address."""
        ...

    @abstractmethod
    async def search_people(self, user_id: str, query: str, *, limit: int) -> list[Person]: ...

    @abstractmethod
    async def search_events(
        self,
        user_id: str,
        query: str,
        *,
        limit: int,
        date_range: DateRange | None = None,
    ) -> list[Event]: ...

    @abstractmethod
    async def search_tasks(
        self,
        user_id: str,
        query: str,
        *,
        limit: int,
        status: str | None = None,
        priority: str | None = None,
        tags: Sequence[str] = (),
    ) -> list[Task]: ...

    @abstractmethod
    async def search_emails(
        self,
        user_id: str,
        query: str,
        *,
        limit: int,
        sender: str | None = None,
        date_range: DateRange | None = None,
        include_drafts: bool = False,
        labels: Sequence[str] = (),
    ) -> list[Email]: ...

    @abstractmethod
    async def search_places(self, user_id: str, query: str, *, limit: int) -> list[Place]: ...

    @abstractmethod
    async def search_deadlines(self, user_id: str, query: str, *, limit: int) -> list[Deadline]: ...

    @abstractmethod
    async def search_routines(self, user_id: str, query: str, *, limit: int) -> list[Routine]: ...

    @abstractmethod
    async def search_open_loops(self, user_id: str, query: str, *, limit: int) -> list[OpenLoop]: ...

    @abstractmethod
    async def search_projects(self, user_id: str, query: str, *, limit: int) -> list[Project]: ...

    @abstractmethod
    async def search_notes(
        self,
        user_id: str,
        query: str,
        *,
        limit: int,
        search_content: bool = True,
    ) -> list[Note]: ...

    @abstractmethod
    async def search_context(
        self,
        user_id: str,
        query: str,
        *,
        entity_types: Sequence[str],
        limit: int,
        min_similarity: float,
    ) -> list[SemanticMatch]: ...
