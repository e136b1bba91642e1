"""String similarity, name matching, and disambiguation text for entity resolution.

Pure functions. Every similarity score is in [0, 1], higher is closer.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Iterable

from rapidfuzz.distance import Jaro, Levenshtein

from concierge.entities.types import EntityType, ResolutionCandidate

_WHITESPACE_RE = re.compile(r"\s+")

_HONORIFICS = ("mr", "mrs", "ms", "miss", "dr", "prof", "professor", "sir", "madam")
_HONORIFIC_RES = [re.compile(rf"^{title}\.?\s+") for title in _HONORIFICS]

_NICKNAMES: dict[str, tuple[str, ...]] = {
    "william": ("will", "bill", "billy", "liam"),
    "robert": ("rob", "bob", "bobby", "robbie"),
    "richard": ("rick", "dick", "richie"),
    "elizabeth": ("liz", "beth", "betsy", "lizzy"),
    "jennifer": ("jen", "jenny"),
    "michael": ("mike", "mikey"),
    "james": ("jim", "jimmy", "jamie"),
    "katherine": ("kate", "kathy", "katie", "kat"),
    "christopher": ("chris",),
    "nicholas": ("nick", "nicky"),
    "alexander": ("alex",),
    "benjamin": ("ben", "benny"),
    "daniel": ("dan", "danny"),
    "david": ("dave", "davy"),
    "joseph": ("joe", "joey"),
    "margaret": ("maggie", "meg", "peggy"),
    "patricia": ("pat", "patty", "tricia"),
    "rebecca": ("becky", "becca"),
    "samantha": ("sam", "sammy"),
    "stephanie": ("steph",),
    "thomas": ("tom", "tommy"),
    "timothy": ("tim", "timmy"),
    "victoria": ("vicky", "vic", "tori"),
}


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def normalize_string(text: str) -> str:
    """Lowercase, strip diacritics and collapse whitespace."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def normalize_name(name: str) -> str:
    """normalize_string plus removal of leading honorifics ("Dr. ", "Mrs ")."""
    normalized = normalize_string(name)
    for pattern in _HONORIFIC_RES:
        normalized = pattern.sub("", normalized)
    return normalized.strip()


@dataclass(frozen=True)
class NameParts:
    first: str = ""
    middle: list[str] = field(default_factory=list)
    last: str = ""
    full: str = ""


def extract_name_parts(name: str) -> NameParts:
    normalized = normalize_name(name)
    parts = normalized.split()
    if not parts:
        return NameParts()
    if len(parts) == 1:
        return NameParts(first=parts[0], full=normalized)
    return NameParts(first=parts[0], middle=parts[1:-1], last=parts[-1], full=normalized)


# ---------------------------------------------------------------------------
# Similarity algorithms
# ---------------------------------------------------------------------------

def levenshtein_distance(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def levenshtein_similarity(a: str, b: str) -> float:
    na, nb = normalize_string(a), normalize_string(b)
    if na == nb:
        return 1.0
    if not na or not nb:
        return 0.0
    return 1.0 - levenshtein_distance(na, nb) / max(len(na), len(nb))


def jaro_winkler_similarity(a: str, b: str) -> float:
    """Jaro similarity with the Winkler common-prefix boost.

    Preferred over edit distance for short strings such as names, where a
    single transposition should not cost as much as two substitutions.
    """
    na, nb = normalize_string(a), normalize_string(b)
    if na == nb:
        return 1.0
    if not na or not nb:
        return 0.0

    jaro = Jaro.similarity(na, nb)
    if jaro == 0.0:
        return 0.0

    prefix = 0
    for ca, cb in zip(na[:4], nb[:4]):
        if ca != cb:
            break
        prefix += 1

    # Boost applies at any Jaro score, not only above 0.7.
    return jaro + prefix * 0.1 * (1 - jaro)


def text_similarity(query: str, text: str) -> float:
    """Word-overlap score blended with whole-string Jaro-Winkler (70/30).

    Exact word hits earn 1.0, near hits (Jaro-Winkler > 0.85) earn 0.8.
    Query words shorter than two characters earn nothing but still count
    toward the denominator.
    """
    query_words = normalize_string(query).split()
    text_words = normalize_string(text).split()
    if not query_words or not text_words:
        return 0.0

    matched = 0.0
    for query_word in query_words:
        if len(query_word) < 2:
            continue
        for text_word in text_words:
            if text_word == query_word:
                matched += 1
                break
            if jaro_winkler_similarity(query_word, text_word) > 0.85:
                matched += 0.8
                break

    overlap = matched / len(query_words)
    return overlap * 0.7 + jaro_winkler_similarity(query, text) * 0.3


# ---------------------------------------------------------------------------
# Names and emails
# ---------------------------------------------------------------------------

def name_similarity(query: str, name: str) -> float:
    q = extract_name_parts(query)
    n = extract_name_parts(name)

    if q.full == n.full:
        return 1.0

    single_word = bool(q.first) and not q.last

    # "John" vs "John Smith"
    if single_word and q.first == n.first:
        return 0.85
    # "Smith" vs "John Smith"
    if single_word and q.first == n.last:
        return 0.8
    # "John Smith" vs "John Q. Smith"
    if q.first and q.last and q.first == n.first and q.last == n.last:
        return 0.95

    full_score = jaro_winkler_similarity(q.full, n.full)

    first_score = 0.0
    if q.first and n.first:
        first_score = jaro_winkler_similarity(q.first, n.first)

    last_score = 0.0
    if single_word and n.last:
        last_score = jaro_winkler_similarity(q.first, n.last)
        if last_score > 0.85:
            last_score *= 0.85

    return max(full_score, first_score * 0.9, last_score)


def could_be_nickname(query: str, full_name: str) -> bool:
    """True for a 2+ char prefix of the first name or a known nickname."""
    normalized = normalize_string(query)
    first = extract_name_parts(full_name).first

    if len(normalized) >= 2 and first.startswith(normalized):
        return True
    return normalized in _NICKNAMES.get(first, ())


def extract_email_username(email: str) -> str:
    local, sep, _ = email.partition("@")
    return local.lower() if sep else email


def name_matches_email(name: str, email: str) -> bool:
    username = extract_email_username(email)
    parts = extract_name_parts(name)
    first, last = parts.first, parts.last

    patterns = [first]
    if last:
        patterns += [f"{first}.{last}", f"{first}{last}", f"{first}_{last}", last]
        if first:
            patterns += [f"{first[0]}.{last}", f"{first}{last[0]}"]

    return any(p and p.lower() in username for p in patterns)


# ---------------------------------------------------------------------------
# Disambiguation text
# ---------------------------------------------------------------------------

_DISAMBIGUATION: dict[EntityType, str] = {
    EntityType.PERSON: 'I found multiple people matching "{query}". Did you mean: {options}?',
    EntityType.EVENT: 'I found multiple events matching "{query}". Which one did you mean: {options}?',
    EntityType.TASK: 'I found multiple tasks matching "{query}". Which one: {options}?',
    EntityType.EMAIL: 'I found multiple emails matching "{query}". Which one: {options}?',
    EntityType.PLACE: 'I found multiple places matching "{query}". Which one: {options}?',
    EntityType.DEADLINE: 'I found multiple deadlines matching "{query}". Which one: {options}?',
    EntityType.ROUTINE: 'I found multiple routines matching "{query}". Which one: {options}?',
    EntityType.OPEN_LOOP: 'I found multiple open loops matching "{query}". Which one: {options}?',
    EntityType.PROJECT: 'I found multiple projects matching "{query}". Which one: {options}?',
    EntityType.NOTE: 'I found multiple notes matching "{query}". Which one: {options}?',
}

_NOT_FOUND: dict[EntityType, str] = {
    EntityType.PERSON: "I couldn't find anyone named \"{query}\" in your contacts. Would you like me to add them?",
    EntityType.EVENT: "I couldn't find any event matching \"{query}\". Could you provide more details?",
    EntityType.TASK: "I couldn't find any task matching \"{query}\". Would you like me to create one?",
    EntityType.EMAIL: (
        "I couldn't find any email matching \"{query}\". "
        "Could you be more specific about the subject or sender?"
    ),
    EntityType.PLACE: (
        "I couldn't find any place matching \"{query}\". "
        "Could you provide more details about the location?"
    ),
    EntityType.DEADLINE: (
        "I couldn't find any deadline matching \"{query}\". "
        "Could you be more specific about the deadline?"
    ),
    EntityType.ROUTINE: "I couldn't find any routine matching \"{query}\". Would you like me to create one?",
    EntityType.OPEN_LOOP: "I couldn't find any open loop matching \"{query}\". Would you like me to create one?",
    EntityType.PROJECT: "I couldn't find any project matching \"{query}\". Would you like me to create one?",
    EntityType.NOTE: "I couldn't find any note matching \"{query}\". Would you like me to create one?",
}


def rank_candidates(candidates: Iterable[ResolutionCandidate]) -> list[ResolutionCandidate]:
    return sorted(candidates, key=lambda c: c.confidence, reverse=True)


def generate_disambiguation_question(
    entity_type: str,
    query: str,
    candidates: Iterable[ResolutionCandidate],
) -> str:
    ranked = rank_candidates(candidates)[:5]
    options = ", ".join(f"{i}. {c.label}" for i, c in enumerate(ranked, start=1))
    resolvable = EntityType.parse(entity_type)
    if resolvable is None:
        return f'Multiple matches found for "{query}": {options}. Which one did you mean?'
    return _DISAMBIGUATION[resolvable].format(query=query, options=options)


def generate_not_found_message(entity_type: str, query: str) -> str:
    resolvable = EntityType.parse(entity_type)
    if resolvable is None:
        return f'I couldn\'t find "{query}". Could you provide more details?'
    return _NOT_FOUND[resolvable].format(query=query)
