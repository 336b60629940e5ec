"""
Event enrichment: raw change events → display-ready facts.

Scores and attendance rows only carry foreign keys. The student's name, the
lesson name and its subject are resolved here, one lookup per entity type.
Student and lesson are fetched concurrently; the subject needs the lesson's
subject id and follows it.

Enrichment is all-or-nothing. A missing related row, a failed lookup or a
row of the wrong shape raises EnrichmentFailure; a partial fact is never
produced.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

from .errors import EnrichmentFailure, LookupFailed, RowDecodeError
from .lookup import EntityLookup
from .models import (
    AnnouncementFact,
    AttendanceFact,
    ChangeEvent,
    EnrichedFact,
    Row,
    ScoreFact,
    SourceRef,
)
from .rows import (
    LessonRow,
    StudentRow,
    decode_announcement,
    decode_attendance,
    decode_lesson,
    decode_score,
    decode_student,
    decode_subject,
)

log = structlog.get_logger()

T = TypeVar("T")


class EventEnricher:
    """Resolves the related rows a change event needs before it can be shown."""

    def __init__(
        self,
        lookup: EntityLookup,
        students_table: str = "users",
        lessons_table: str = "lessons",
        subjects_table: str = "subjects",
    ):
        self._lookup = lookup
        self._students_table = students_table
        self._lessons_table = lessons_table
        self._subjects_table = subjects_table
        self._handlers: dict[str, Callable[[ChangeEvent, Row | None], Awaitable[EnrichedFact]]] = {
            "scores": self._enrich_score,
            "attendance": self._enrich_attendance,
            "announcements": self._enrich_announcement,
        }

    @property
    def tables(self) -> frozenset[str]:
        return frozenset(self._handlers)

    async def enrich(self, event: ChangeEvent) -> EnrichedFact:
        """
        Build the fact for one event.

        Inserts and updates are read from the `after` snapshot, deletes from
        `before`.
        """
        handler = self._handlers.get(event.table)
        if handler is None:
            raise EnrichmentFailure(f"no enrichment for table {event.table!r}")
        try:
            return await handler(event, event.row)
        except (RowDecodeError, LookupFailed) as exc:
            raise EnrichmentFailure(str(exc)) from exc

    async def _enrich_score(self, event: ChangeEvent, row: Row | None) -> ScoreFact:
        score = decode_score(row)
        student, lesson = await self._student_and_lesson(score.student_id, score.lesson_id)
        subject = await self._fetch(self._subjects_table, lesson.subject_id, decode_subject)
        return ScoreFact(
            source=SourceRef(event.table, score.id, event.committed_at),
            student_id=student.id,
            student_name=student.display_name,
            lesson_id=lesson.id,
            lesson_name=lesson.lesson_name,
            subject_id=subject.id,
            subject_name=subject.subject_name,
            score=score.score,
        )

    async def _enrich_attendance(self, event: ChangeEvent, row: Row | None) -> AttendanceFact:
        attendance = decode_attendance(row)
        student, lesson = await self._student_and_lesson(attendance.student_id, attendance.lesson_id)
        subject = await self._fetch(self._subjects_table, lesson.subject_id, decode_subject)
        return AttendanceFact(
            source=SourceRef(event.table, attendance.id, event.committed_at),
            student_id=student.id,
            student_name=student.display_name,
            lesson_id=lesson.id,
            lesson_name=lesson.lesson_name,
            subject_id=subject.id,
            subject_name=subject.subject_name,
            status=attendance.status,
        )

    async def _enrich_announcement(self, event: ChangeEvent, row: Row | None) -> AnnouncementFact:
        announcement = decode_announcement(row)
        return AnnouncementFact(
            source=SourceRef(event.table, announcement.id, event.committed_at),
            title=announcement.title,
            content=announcement.content or "",
            audience=announcement.target_audience,
            important=announcement.is_important,
        )

    async def _student_and_lesson(self, student_id: str, lesson_id: str) -> tuple[StudentRow, LessonRow]:
        results = await asyncio.gather(
            self._fetch(self._students_table, student_id, decode_student),
            self._fetch(self._lessons_table, lesson_id, decode_lesson),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        student, lesson = results
        return student, lesson

    async def _fetch(self, table: str, key: str, decode: Callable[[Row | None], T]) -> T:
        row = await self._lookup.get(table, key)
        if row is None:
            log.info("enricher.related_row_missing", table=table, key=key)
            raise EnrichmentFailure(f"{table} row {key} not found")
        return decode(row)
