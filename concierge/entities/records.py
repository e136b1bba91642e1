"""Domain records handed to the resolver by context collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class Person:
    id: str
    name: str
    email: str | None = None
    company: str | None = None
    phone: str | None = None


@dataclass
class Event:
    id: str
    title: str
    starts_at: datetime
    description: str | None = None
    location: str | None = None


@dataclass
class Task:
    id: str
    title: str
    description: str | None = None
    status: str = "pending"
    priority: str = "medium"
    tags: list[str] = field(default_factory=list)


@dataclass
class Email:
    id: str
    subject: str | None
    from_address: str
    received_at: datetime
    snippet: str | None = None
    from_name: str | None = None
    is_draft: bool = False
    label_ids: list[str] = field(default_factory=list)


@dataclass
class Place:
    id: str
    name: str
    address: str | None = None
    city: str | None = None
    type: str | None = None


@dataclass
class Deadline:
    id: str
    title: str
    due_at: datetime
    type: str = "deadline"
    status: str = "pending"
    description: str | None = None
    task_id: str | None = None
    event_id: str | None = None


@dataclass
class Routine:
    id: str
    name: str
    type: str
    frequency: str
    description: str | None = None
    category: str | None = None
    status: str = "active"


@dataclass
class OpenLoop:
    id: str
    title: str
    type: str
    status: str = "open"
    description: str | None = None
    priority: str | None = None
    related_person_id: str | None = None


@dataclass
class Project:
    id: str
    name: str
    type: str
    status: str = "active"
    description: str | None = None
    priority: str | None = None


@dataclass
class Note:
    id: str
    content: str
    title: str | None = None
    type: str | None = None
    category: str | None = None
    is_pinned: bool = False


@dataclass
class SemanticMatch:
    """One hit from embedding search; ``entity`` is one of the records above."""
    entity: Any
    score: float
    entity_type: str = ""
