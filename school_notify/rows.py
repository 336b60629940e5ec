"""
Row decoders, one per backend table.

Change payloads and lookup results arrive as loose JSON objects. Each table
gets a strict model here so the rest of the pipeline never reads fields
optimistically: a row missing a required column is rejected with
RowDecodeError. Extra columns are ignored.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, StringConstraints, ValidationError

from .errors import RowDecodeError
from .models import Row


def _as_identifier(value: Any) -> Any:
    # Primary keys are bigint in some tables and uuid in others.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


Identifier = Annotated[str, StringConstraints(min_length=1), BeforeValidator(_as_identifier)]
Flag = Annotated[bool, BeforeValidator(lambda v: False if v is None else v)]


class _TableRow(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class ScoreRow(_TableRow):
    id: Identifier
    student_id: Identifier
    lesson_id: Identifier
    score: float
    updated_at: datetime | None = None


class AttendanceRow(_TableRow):
    id: Identifier
    student_id: Identifier
    lesson_id: Identifier
    status: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    noted_at: datetime | None = None


class AnnouncementRow(_TableRow):
    id: Identifier
    title: str | None = None
    content: str | None = None
    target_audience: str | None = Field(default=None, alias="targetAudience")
    is_important: Flag = Field(default=False, alias="isImportant")
    created_at: datetime | None = None
    updated_at: datetime | None = None


class StudentRow(_TableRow):
    id: Identifier
    first_name: str = Field(alias="firstName")
    last_name: str = Field(default="", alias="lastName")

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class LessonRow(_TableRow):
    id: Identifier
    lesson_name: str = Field(alias="lessonname")
    subject_id: Identifier = Field(alias="subjectid")


class SubjectRow(_TableRow):
    id: Identifier
    subject_name: str = Field(alias="subjectname")


M = TypeVar("M", bound=_TableRow)


def _decode(model: type[M], table: str, row: Row | None) -> M:
    if row is None:
        raise RowDecodeError(table, "no row snapshot")
    try:
        return model.model_validate(dict(row))
    except ValidationError as exc:
        detail = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise RowDecodeError(table, detail) from exc


def decode_score(row: Row | None) -> ScoreRow:
    return _decode(ScoreRow, "scores", row)


def decode_attendance(row: Row | None) -> AttendanceRow:
    return _decode(AttendanceRow, "attendance", row)


def decode_announcement(row: Row | None) -> AnnouncementRow:
    return _decode(AnnouncementRow, "announcements", row)


def decode_student(row: Row | None) -> StudentRow:
    return _decode(StudentRow, "students", row)


def decode_lesson(row: Row | None) -> LessonRow:
    return _decode(LessonRow, "lessons", row)


def decode_subject(row: Row | None) -> SubjectRow:
    return _decode(SubjectRow, "subjects", row)
