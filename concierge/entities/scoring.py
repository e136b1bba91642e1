"""Per-type candidate scoring and resolved/ambiguous/not_found classification."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar, Generic, Iterable, Literal, TypeVar

from concierge.config import ResolverConfig
from concierge.entities.matchers import (
    could_be_nickname,
    name_matches_email,
    name_similarity,
    rank_candidates,
    text_similarity,
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
from concierge.entities.types import (
    DeadlineHints,
    EmailHints,
    EntityMatch,
    EntityType,
    EventHints,
    ExtractedEntity,
    NoteHints,
    OpenLoopHints,
    PersonHints,
    PlaceHints,
    ProjectHints,
    ResolutionCandidate,
    ResolvedEntity,
    RoutineHints,
    TaskHints,
)

R = TypeVar("R")
H = TypeVar("H")

CandidateSource = Literal["lexical", "semantic"]


@dataclass
class ScoredCandidate(Generic[R]):
    record: R
    id: str
    label: str
    score: float
    reason: str = ""
    source: CandidateSource = "lexical"


def _text_score(query: str, primary: str | None, secondary: str | None, weight: float = 0.8) -> float:
    """max(sim(primary), sim(secondary) * weight); missing fields score 0."""
    primary_score = text_similarity(query, primary) if primary else 0.0
    secondary_score = text_similarity(query, secondary) * weight if secondary else 0.0
    return max(primary_score, secondary_score)


class CandidateScorer(ABC, Generic[R, H]):
    """Scores records of one entity type against a query plus optional hints."""

    entity_type: ClassVar[EntityType]

    def ambiguity_gap(self, config: ResolverConfig) -> float:
        return config.ambiguity_gap

    @abstractmethod
    def score(self, query: str, record: R, hints: H | None) -> tuple[float, str]:
        """Return (raw score, match reason). Clamping happens in score_all."""
        ...

    @abstractmethod
    def label(self, record: R) -> str: ...

    def record_id(self, record: R) -> str:
        return record.id  # type: ignore[attr-defined]

    def score_all(
        self,
        query: str,
        records: Iterable[R],
        hints: H | None = None,
        source: CandidateSource = "lexical",
    ) -> list[ScoredCandidate[R]]:
        scored: list[ScoredCandidate[R]] = []
        for record in records:
            raw, reason = self.score(query, record, hints)
            scored.append(ScoredCandidate(
                record=record,
                id=self.record_id(record),
                label=self.label(record),
                score=min(1.0, max(0.0, raw)),
                reason=reason,
                source=source,
            ))
        scored.sort(key=lambda c: c.score, reverse=True)
        return scored


class PersonScorer(CandidateScorer[Person, PersonHints]):
    entity_type = EntityType.PERSON

    def ambiguity_gap(self, config: ResolverConfig) -> float:
        return config.person_ambiguity_gap

    def score(self, query: str, record: Person, hints: PersonHints | None) -> tuple[float, str]:
        score = name_similarity(query, record.name)
        reason = "Name similarity"

        if hints and hints.email and record.email and record.email.lower() == hints.email.lower():
            score = 1.0
            reason = "Email exact match"
        elif record.email and name_matches_email(query, record.email):
            score = max(score, 0.9)
            reason = "Name matches email"

        if could_be_nickname(query, record.name):
            score = max(score, 0.85)
            reason = "Possible nickname"

        if hints and hints.company and record.company:
            if hints.company.lower() in record.company.lower():
                score += 0.1
                reason += " + company match"

        return score, reason

    def label(self, record: Person) -> str:
        return f"{record.name} ({record.email})" if record.email else record.name


class EventScorer(CandidateScorer[Event, EventHints]):
    entity_type = EntityType.EVENT

    def score(self, query: str, record: Event, hints: EventHints | None) -> tuple[float, str]:
        return _text_score(query, record.title, record.description), "Title similarity"

    def label(self, record: Event) -> str:
        return f"{record.title} ({record.starts_at:%Y-%m-%d})"


class TaskScorer(CandidateScorer[Task, TaskHints]):
    entity_type = EntityType.TASK

    def score(self, query: str, record: Task, hints: TaskHints | None) -> tuple[float, str]:
        return _text_score(query, record.title, record.description), "Title similarity"

    def label(self, record: Task) -> str:
        return record.title


class EmailScorer(CandidateScorer[Email, EmailHints]):
    entity_type = EntityType.EMAIL

    def score(self, query: str, record: Email, hints: EmailHints | None) -> tuple[float, str]:
        return _text_score(query, record.subject, record.snippet, weight=0.7), "Subject similarity"

    def label(self, record: Email) -> str:
        sender = record.from_name or record.from_address
        return f"\"{record.subject or 'No subject'}\" from {sender}"


class PlaceScorer(CandidateScorer[Place, PlaceHints]):
    entity_type = EntityType.PLACE

    def score(self, query: str, record: Place, hints: PlaceHints | None) -> tuple[float, str]:
        score = max(
            _text_score(query, record.name, record.address),
            text_similarity(query, record.city) * 0.6 if record.city else 0.0,
        )
        reason = "Name similarity"
        if hints and hints.place_type and record.type == hints.place_type:
            score += 0.1
            reason += " + type match"
        if hints and hints.city and record.city and record.city.lower() == hints.city.lower():
            score += 0.15
            reason += " + city match"
        return score, reason

    def label(self, record: Place) -> str:
        return f"{record.name} ({record.address})" if record.address else record.name


class DeadlineScorer(CandidateScorer[Deadline, DeadlineHints]):
    entity_type = EntityType.DEADLINE

    def score(self, query: str, record: Deadline, hints: DeadlineHints | None) -> tuple[float, str]:
        score = _text_score(query, record.title, record.description)
        reason = "Title similarity"
        if hints:
            if hints.type and record.type == hints.type:
                score += 0.1
                reason += " + type match"
            if hints.status and record.status == hints.status:
                score += 0.05
                reason += " + status match"
            related = hints.related_entity_id
            if related and related in (record.task_id, record.event_id):
                score += 0.15
                reason += " + related entity"
        return score, reason

    def label(self, record: Deadline) -> str:
        return f"{record.title} ({record.type}, due {record.due_at:%Y-%m-%d})"


class RoutineScorer(CandidateScorer[Routine, RoutineHints]):
    entity_type = EntityType.ROUTINE

    def score(self, query: str, record: Routine, hints: RoutineHints | None) -> tuple[float, str]:
        score = _text_score(query, record.name, record.description)
        reason = "Name similarity"
        if hints and hints.type and record.type == hints.type:
            score += 0.1
            reason += " + type match"
        if hints and hints.category and record.category == hints.category:
            score += 0.1
            reason += " + category match"
        return score, reason

    def label(self, record: Routine) -> str:
        return f"{record.name} ({record.type}, {record.frequency})"


class OpenLoopScorer(CandidateScorer[OpenLoop, OpenLoopHints]):
    entity_type = EntityType.OPEN_LOOP

    def score(self, query: str, record: OpenLoop, hints: OpenLoopHints | None) -> tuple[float, str]:
        score = _text_score(query, record.title, record.description)
        reason = "Title similarity"
        if hints:
            if hints.type and record.type == hints.type:
                score += 0.1
                reason += " + type match"
            if hints.priority and record.priority == hints.priority:
                score += 0.05
                reason += " + priority match"
            if hints.related_person_id and record.related_person_id == hints.related_person_id:
                score += 0.15
                reason += " + related person"
        return score, reason

    def label(self, record: OpenLoop) -> str:
        return f"{record.title} ({record.type}, {record.status})"


class ProjectScorer(CandidateScorer[Project, ProjectHints]):
    entity_type = EntityType.PROJECT

    def score(self, query: str, record: Project, hints: ProjectHints | None) -> tuple[float, str]:
        score = _text_score(query, record.name, record.description)
        reason = "Name similarity"
        if hints:
            if hints.type and record.type == hints.type:
                score += 0.1
                reason += " + type match"
            if hints.status and record.status == hints.status:
                score += 0.05
                reason += " + status match"
            if hints.priority and record.priority == hints.priority:
                score += 0.05
                reason += " + priority match"
        return score, reason

    def label(self, record: Project) -> str:
        return f"{record.name} ({record.type}, {record.status})"


class NoteScorer(CandidateScorer[Note, NoteHints]):
    entity_type = EntityType.NOTE

    def score(self, query: str, record: Note, hints: NoteHints | None) -> tuple[float, str]:
        score = _text_score(query, record.title, record.content[:500], weight=0.7)
        reason = "Content similarity"
        if hints:
            if hints.type and record.type == hints.type:
                score += 0.1
                reason += " + type match"
            if hints.category and record.category == hints.category:
                score += 0.1
                reason += " + category match"
            if hints.pinned_only and record.is_pinned:
                score += 0.15
                reason += " + pinned"
        return score, reason

    def label(self, record: Note) -> str:
        if record.title:
            return record.title
        return record.content[:50] + "..."


SCORERS: dict[EntityType, CandidateScorer] = {
    scorer.entity_type: scorer
    for scorer in (
        PersonScorer(), EventScorer(), TaskScorer(), EmailScorer(), PlaceScorer(),
        DeadlineScorer(), RoutineScorer(), OpenLoopScorer(), ProjectScorer(), NoteScorer(),
    )
}


def _match_method(candidate: ScoredCandidate) -> str:
    if candidate.score == 1.0:
        return "exact"
    return "semantic" if candidate.source == "semantic" else "fuzzy"


def classify_candidates(
    extracted: ExtractedEntity,
    entity_type: EntityType,
    scored: list[ScoredCandidate],
    config: ResolverConfig,
    gap: float,
) -> ResolvedEntity:
    """Turn a score-sorted candidate list into a resolution outcome.

    A top score at or above ``exact_match_threshold`` wins outright. Above
    ``fuzzy_match_threshold`` it wins only when it is alone or leads the
    runner-up by more than ``gap``. Otherwise two or more candidates over the
    fuzzy bar make the result ambiguous, and anything else is not_found with
    the top score kept for diagnostics.
    """
    if not scored:
        return ResolvedEntity(extracted=extracted, status="not_found", confidence=0.0)

    top = scored[0]

    def resolved() -> ResolvedEntity:
        return ResolvedEntity(
            extracted=extracted,
            status="resolved",
            confidence=top.score,
            match=EntityMatch(
                id=top.id,
                type=entity_type,
                record=top.record,
                confidence=top.score,
                match_method=_match_method(top),  # type: ignore[arg-type]
            ),
        )

    if top.score >= config.exact_match_threshold:
        return resolved()

    if top.score >= config.fuzzy_match_threshold and (
        len(scored) == 1 or top.score - scored[1].score > gap
    ):
        return resolved()

    above_bar = [c for c in scored if c.score >= config.fuzzy_match_threshold]
    if top.score >= config.fuzzy_match_threshold and len(above_bar) > 1:
        candidates = rank_candidates(
            ResolutionCandidate(id=c.id, label=c.label, confidence=c.score, match_reason=c.reason)
            for c in above_bar[: config.max_candidates]
        )
        return ResolvedEntity(
            extracted=extracted,
            status="ambiguous",
            confidence=top.score,
            candidates=tuple(candidates),
        )

    return ResolvedEntity(extracted=extracted, status="not_found", confidence=top.score)
