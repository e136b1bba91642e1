"""Entity resolver: links extracted mentions to the user's domain records."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from concierge.config import ResolverConfig
from concierge.entities.matchers import (
    generate_disambiguation_question,
    generate_not_found_message,
)
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
    Task,
)
from concierge.entities.scoring import SCORERS, CandidateSource, classify_candidates
from concierge.entities.sources import ContextSource
from concierge.entities.types import (
    DeadlineHints,
    EmailHints,
    EntityMatch,
    EntityResolutionError,
    EntityType,
    EventHints,
    ExtractedEntity,
    NoteHints,
    OpenLoopHints,
    PersonHints,
    PlaceHints,
    ProjectHints,
    ResolutionErrorCode,
    ResolutionResult,
    ResolvedEntity,
    RoutineHints,
    TaskHints,
)
from concierge.utils.logging import get_logger

log = get_logger(__name__)

LexicalSearch = Callable[[str, str, Any], Awaitable[list[Any]]]


class EntityResolver:
    """Resolves extracted entities with an exact -> lexical -> semantic cascade.

    Every per-type resolve method either returns a ResolvedEntity or raises
    EntityResolutionError(RESOLUTION_FAILED) chained to the underlying
    failure. ``resolve_entities`` never raises for a single bad entity.
    """

    def __init__(self, source: ContextSource, config: ResolverConfig | None = None) -> None:
        self._source = source
        self._config = config or ResolverConfig()
        self._searches: dict[EntityType, LexicalSearch] = {
            EntityType.PERSON: self._search_people,
            EntityType.EVENT: self._search_events,
            EntityType.TASK: self._search_tasks,
            EntityType.EMAIL: self._search_emails,
            EntityType.PLACE: self._search_places,
            EntityType.DEADLINE: self._search_deadlines,
            EntityType.ROUTINE: self._search_routines,
            EntityType.OPEN_LOOP: self._search_open_loops,
            EntityType.PROJECT: self._search_projects,
            EntityType.NOTE: self._search_notes,
        }
        missing = set(EntityType) - set(self._searches)
        missing |= set(EntityType) - set(SCORERS)
        if missing:
            raise RuntimeError(f"No resolution handler for: {sorted(m.value for m in missing)}")

    @property
    def config(self) -> ResolverConfig:
        return self._config

    # --- Batch ---

    async def resolve_entities(
        self, user_id: str, entities: list[ExtractedEntity]
    ) -> ResolutionResult:
        to_resolve = [e for e in entities if e.needs_resolution]
        log.debug("resolution_started", total=len(entities), to_resolve=len(to_resolve))

        outcomes = await asyncio.gather(
            *(self._resolve_safely(user_id, entity) for entity in to_resolve)
        )

        resolved = [o for o in outcomes if o.status == "resolved"]
        ambiguous = [o for o in outcomes if o.status == "ambiguous"]
        not_found = [o for o in outcomes if o.status == "not_found"]

        questions = [
            generate_disambiguation_question(o.extracted.type, o.extracted.text, o.candidates or ())
            for o in ambiguous
        ]
        questions += [
            generate_not_found_message(o.extracted.type, o.extracted.text)
            for o in not_found
            if EntityType.parse(o.extracted.type) is EntityType.PERSON
        ]

        result = ResolutionResult(
            entities=tuple(outcomes),
            resolved=tuple(resolved),
            ambiguous=tuple(ambiguous),
            not_found=tuple(not_found),
            needs_clarification=bool(questions),
            clarification_questions=tuple(questions),
        )
        log.info(
            "resolution_completed",
            resolved=len(resolved),
            ambiguous=len(ambiguous),
            not_found=len(not_found),
            needs_clarification=result.needs_clarification,
        )
        return result

    async def _resolve_safely(self, user_id: str, entity: ExtractedEntity) -> ResolvedEntity:
        try:
            return await self.resolve_entity(user_id, entity)
        except Exception as exc:
            log.warning(
                "entity_resolution_failed",
                entity_type=entity.type,
                text=entity.text,
                error=str(exc),
            )
            return ResolvedEntity(
                extracted=entity,
                status="not_found",
                confidence=0.0,
                error=str(exc) or type(exc).__name__,
            )

    async def resolve_entity(
        self, user_id: str, entity: ExtractedEntity, hints: Any = None
    ) -> ResolvedEntity:
        entity_type = EntityType.parse(entity.type)
        if entity_type is None:
            raise EntityResolutionError(
                ResolutionErrorCode.INVALID_ENTITY_TYPE,
                f"Cannot resolve entities of type {entity.type!r}",
                {"type": entity.type},
            )
        return await self._resolve(entity_type, user_id, entity, hints)

    # --- Per type ---

    async def resolve_person(
        self, user_id: str, name: str, hints: PersonHints | None = None
    ) -> ResolvedEntity[Person]:
        return await self._resolve_text(EntityType.PERSON, user_id, name, hints)

    async def resolve_event(
        self, user_id: str, description: str, hints: EventHints | None = None
    ) -> ResolvedEntity[Event]:
        return await self._resolve_text(EntityType.EVENT, user_id, description, hints)

    async def resolve_task(
        self, user_id: str, description: str, hints: TaskHints | None = None
    ) -> ResolvedEntity[Task]:
        return await self._resolve_text(EntityType.TASK, user_id, description, hints)

    async def resolve_email(
        self, user_id: str, description: str, hints: EmailHints | None = None
    ) -> ResolvedEntity[Email]:
        return await self._resolve_text(EntityType.EMAIL, user_id, description, hints)

    async def resolve_place(
        self, user_id: str, description: str, hints: PlaceHints | None = None
    ) -> ResolvedEntity[Place]:
        return await self._resolve_text(EntityType.PLACE, user_id, description, hints)

    async def resolve_deadline(
        self, user_id: str, description: str, hints: DeadlineHints | None = None
    ) -> ResolvedEntity[Deadline]:
        return await self._resolve_text(EntityType.DEADLINE, user_id, description, hints)

    async def resolve_routine(
        self, user_id: str, description: str, hints: RoutineHints | None = None
    ) -> ResolvedEntity[Routine]:
        return await self._resolve_text(EntityType.ROUTINE, user_id, description, hints)

    async def resolve_open_loop(
        self, user_id: str, description: str, hints: OpenLoopHints | None = None
    ) -> ResolvedEntity[OpenLoop]:
        return await self._resolve_text(EntityType.OPEN_LOOP, user_id, description, hints)

    async def resolve_project(
        self, user_id: str, description: str, hints: ProjectHints | None = None
    ) -> ResolvedEntity[Project]:
        return await self._resolve_text(EntityType.PROJECT, user_id, description, hints)

    async def resolve_note(
        self, user_id: str, description: str, hints: NoteHints | None = None
    ) -> ResolvedEntity[Note]:
        return await self._resolve_text(EntityType.NOTE, user_id, description, hints)

    async def _resolve_text(
        self, entity_type: EntityType, user_id: str, text: str, hints: Any
    ) -> ResolvedEntity:
        extracted = ExtractedEntity(type=entity_type.value, text=text, raw_value=text)
        return await self._resolve(entity_type, user_id, extracted, hints)

    # --- Cascade ---

    async def _resolve(
        self,
        entity_type: EntityType,
        user_id: str,
        extracted: ExtractedEntity,
        hints: Any,
    ) -> ResolvedEntity:
        query = extracted.text
        scorer = SCORERS[entity_type]
        try:
            if entity_type is EntityType.PERSON and isinstance(hints, PersonHints) and hints.email:
                person = await self._find_person_by_email(user_id, hints.email)
                if person is not None:
                    return ResolvedEntity(
                        extracted=extracted,
                        status="resolved",
                        confidence=1.0,
                        match=EntityMatch(
                            id=person.id,
                            type=EntityType.PERSON,
                            record=person,
                            confidence=1.0,
                            match_method="exact",
                        ),
                    )

            records = await self._lexical(entity_type, user_id, query, hints)
            source: CandidateSource = "lexical"
            if not records and self._config.use_semantic_search:
                records = await self._semantic(entity_type, user_id, query, hints)
                source = "semantic"

            scored = scorer.score_all(query, records, hints, source=source)
            return classify_candidates(
                extracted, entity_type, scored, self._config, scorer.ambiguity_gap(self._config)
            )
        except Exception as exc:
            details: dict[str, Any] = {"query": query, "error": str(exc)}
            if isinstance(exc, EntityResolutionError):
                details["stage"] = exc.code.value
            raise EntityResolutionError(
                ResolutionErrorCode.RESOLUTION_FAILED,
                f'Failed to resolve {entity_type.value} "{query}": {exc}',
                details,
            ) from exc

    async def _find_person_by_email(self, user_id: str, email: str) -> Person | None:
        try:
            return await self._source.find_person_by_email(user_id, email.lower())
        except Exception as exc:
            raise EntityResolutionError(
                ResolutionErrorCode.DATABASE_ERROR,
                f"Direct lookup failed: {exc}",
                {"email": email},
            ) from exc

    async def _lexical(
        self, entity_type: EntityType, user_id: str, query: str, hints: Any
    ) -> list[Any]:
        try:
            return list(await self._searches[entity_type](user_id, query, hints))
        except Exception as exc:
            raise EntityResolutionError(
                ResolutionErrorCode.SEARCH_ERROR,
                f"Search failed: {exc}",
                {"entity_type": entity_type.value},
            ) from exc

    async def _semantic(
        self, entity_type: EntityType, user_id: str, query: str, hints: Any
    ) -> list[Any]:
        try:
            matches = await self._source.search_context(
                user_id,
                query,
                entity_types=[entity_type.value],
                limit=self._config.search_limit,
                min_similarity=self._config.semantic_threshold,
            )
        except Exception as exc:
            raise EntityResolutionError(
                ResolutionErrorCode.SEARCH_ERROR,
                f"Semantic search failed: {exc}",
                {"entity_type": entity_type.value},
            ) from exc

        records = [m.entity for m in matches]
        if isinstance(hints, EventHints) and hints.date_range:
            records = [r for r in records if hints.date_range.contains(r.starts_at)]
        elif isinstance(hints, EmailHints):
            if hints.date_range:
                records = [r for r in records if hints.date_range.contains(r.received_at)]
            if not hints.include_drafts:
                records = [r for r in records if not r.is_draft]
        return records

    # --- Lexical search per type ---

    async def _search_people(self, user_id: str, query: str, hints: PersonHints | None) -> list[Person]:
        return await self._source.search_people(user_id, query, limit=self._config.search_limit)

    async def _search_events(self, user_id: str, query: str, hints: EventHints | None) -> list[Event]:
        return await self._source.search_events(
            user_id, query,
            limit=self._config.search_limit,
            date_range=hints.date_range if hints else None,
        )

    async def _search_tasks(self, user_id: str, query: str, hints: TaskHints | None) -> list[Task]:
        if hints is None:
            return await self._source.search_tasks(user_id, query, limit=self._config.search_limit)
        return await self._source.search_tasks(
            user_id, query,
            limit=self._config.search_limit,
            status=hints.status,
            priority=hints.priority,
            tags=hints.tags,
        )

    async def _search_emails(self, user_id: str, query: str, hints: EmailHints | None) -> list[Email]:
        if hints is None:
            return await self._source.search_emails(user_id, query, limit=self._config.search_limit)
        return await self._source.search_emails(
            user_id, query,
            limit=self._config.search_limit,
            sender=hints.sender,
            date_range=hints.date_range,
            include_drafts=hints.include_drafts,
            labels=hints.labels,
        )

    async def _search_places(self, user_id: str, query: str, hints: PlaceHints | None) -> list[Place]:
        return await self._source.search_places(user_id, query, limit=self._config.search_limit)

    async def _search_deadlines(self, user_id: str, query: str, hints: DeadlineHints | None) -> list[Deadline]:
        return await self._source.search_deadlines(user_id, query, limit=self._config.search_limit)

    async def _search_routines(self, user_id: str, query: str, hints: RoutineHints | None) -> list[Routine]:
        return await self._source.search_routines(user_id, query, limit=self._config.search_limit)

    async def _search_open_loops(self, user_id: str, query: str, hints: OpenLoopHints | None) -> list[OpenLoop]:
        return await self._source.search_open_loops(user_id, query, limit=self._config.search_limit)

    async def _search_projects(self, user_id: str, query: str, hints: ProjectHints | None) -> list[Project]:
        return await self._source.search_projects(user_id, query, limit=self._config.search_limit)

    async def _search_notes(self, user_id: str, query: str, hints: NoteHints | None) -> list[Note]:
        return await self._source.search_notes(
            user_id, query,
            limit=self._config.search_limit,
            search_content=hints.search_content if hints else True,
        )
