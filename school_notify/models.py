"""
Core types shared by every stage of the notification pipeline.

- ChangeEvent: one row-level change delivered by a change feed
- SubscriptionScope / RowFilter: what the signed-in user is allowed to watch
- ScoreFact / AttendanceFact / AnnouncementFact: enriched, display-ready facts
- NotificationRecord: what the store persists and the UI renders
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field


class Operation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Role(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"
    PARENT = "parent"

    @classmethod
    def parse(cls, value: str) -> Role:
        """Accept the backend's capitalised role names ("Parent", "Student")."""
        return cls(value.strip().lower())


class Category(str, Enum):
    GRADE = "grade"
    ATTENDANCE = "attendance"
    ANNOUNCEMENT = "announcement"
    GENERAL = "general"


Row = Mapping[str, Any]


@dataclass(frozen=True)
class ChangeEvent:
    """A parsed row-level change."""
    table: str
    operation: Operation
    committed_at: datetime
    before: Row | None = None
    after: Row | None = None

    @property
    def row(self) -> Row | None:
        """The snapshot that describes the affected row."""
        if self.operation is Operation.DELETE:
            return self.before
        return self.after


@dataclass(frozen=True)
class RowFilter:
    """
    Single-column row filter for a change subscription.

    Rendered in the backend's filter syntax for the subscription request and
    re-checked client side, because the backend does not filter deletes.
    """
    column: str
    op: Literal["eq", "in"]
    values: tuple[str, ...]

    @classmethod
    def equals(cls, column: str, value: str) -> RowFilter:
        return cls(column, "eq", (str(value),))

    @classmethod
    def any_of(cls, column: str, values) -> RowFilter:
        return cls(column, "in", tuple(sorted(str(v) for v in values)))

    def query_param(self) -> tuple[str, str]:
        """(column, condition) as a PostgREST query parameter."""
        if self.op == "eq":
            return self.column, f"eq.{self.values[0]}"
        return self.column, f"in.({','.join(self.values)})"

    def to_postgrest(self) -> str:
        column, condition = self.query_param()
        return f"{column}={condition}"

    def matches(self, row: Row | None) -> bool:
        # Rows without the column (e.g. key-only delete snapshots) were
        # already filtered server side.
        if not row or self.column not in row:
            return True
        return str(row[self.column]) in self.values


@dataclass(frozen=True)
class SubscriptionScope:
    """The signed-in user and the rows they may be notified about."""
    role: Role
    user_id: str
    child_ids: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def for_user(cls, role: Role | str, user_id: str, child_ids=()) -> SubscriptionScope:
        if isinstance(role, str):
            role = Role.parse(role)
        children = frozenset(str(c) for c in child_ids) if role is Role.PARENT else frozenset()
        return cls(role=role, user_id=str(user_id), child_ids=children)

    @property
    def principal(self) -> str:
        return f"{self.role.value}:{self.user_id}"


# --- Enriched facts ---


@dataclass(frozen=True)
class SourceRef:
    """Where a fact came from: table, row id and commit time."""
    table: str
    row_id: str
    committed_at: datetime


@dataclass(frozen=True)
class ScoreFact:
    category: ClassVar[Category] = Category.GRADE

    source: SourceRef
    student_id: str
    student_name: str
    lesson_id: str
    lesson_name: str
    subject_id: str
    subject_name: str
    score: float


@dataclass(frozen=True)
class AttendanceFact:
    category: ClassVar[Category] = Category.ATTENDANCE

    source: SourceRef
    student_id: str
    student_name: str
    lesson_id: str
    lesson_name: str
    subject_id: str
    subject_name: str
    status: str


@dataclass(frozen=True)
class AnnouncementFact:
    category: ClassVar[Category] = Category.ANNOUNCEMENT

    source: SourceRef
    title: str | None
    content: str
    audience: str | None = None
    important: bool = False


EnrichedFact = Union[ScoreFact, AttendanceFact, AnnouncementFact]


# --- Notification records ---


class NotificationRecord(BaseModel):
    """A user-facing notification. Only the read flag ever changes."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    message: str
    category: Category = Category.GENERAL
    created_at: datetime
    read: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    def as_read(self) -> NotificationRecord:
        if self.read:
            return self
        return self.model_copy(update={"read": True})
