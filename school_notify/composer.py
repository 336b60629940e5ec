"""
Notification composition: fact + operation → NotificationRecord.

Pure and deterministic. The same fact and operation always give the same
title, message and id, which is what lets the deduplicator recognise a fact
that reached us through more than one subscription.
"""

from __future__ import annotations

from typing import Any

from .errors import ComposeError
from .models import (
    AnnouncementFact,
    AttendanceFact,
    Category,
    EnrichedFact,
    NotificationRecord,
    Operation,
    ScoreFact,
    SourceRef,
)

# (category, operation) -> (title template, message template)
TEMPLATES: dict[tuple[Category, Operation], tuple[str, str]] = {
    (Category.GRADE, Operation.INSERT): (
        "New Score for {student}",
        "{student} received a score of {score} in {subject} ({lesson})",
    ),
    (Category.GRADE, Operation.UPDATE): (
        "Updated Score for {student}",
        "{student}'s score in {subject} ({lesson}) was updated to {score}",
    ),
    (Category.GRADE, Operation.DELETE): (
        "Grade Removed for {student}",
        "A score of {score} in {subject} ({lesson}) has been removed",
    ),
    (Category.ATTENDANCE, Operation.INSERT): (
        "Attendance Record: {Status} - {student}",
        "{student} was marked {status} in {subject} ({lesson})",
    ),
    (Category.ATTENDANCE, Operation.UPDATE): (
        "Attendance Update: {Status} - {student}",
        "{student}'s attendance in {subject} ({lesson}) was updated to {status}",
    ),
    (Category.ATTENDANCE, Operation.DELETE): (
        "Attendance Removed for {student}",
        "The {status} attendance record for {subject} ({lesson}) has been removed",
    ),
    (Category.ANNOUNCEMENT, Operation.INSERT): ("{title}", "{content}"),
    (Category.ANNOUNCEMENT, Operation.UPDATE): ("Updated: {title}", "{content}"),
    (Category.ANNOUNCEMENT, Operation.DELETE): (
        "Announcement Removed",
        'The announcement "{title}" has been removed',
    ),
}

STATUS_COLORS = {
    "present": "#4CAF50",
    "late": "#FF9800",
    "excused": "#2196F3",
}
DEFAULT_STATUS_COLOR = "#F44336"

_ACTIONS = {
    Operation.INSERT: "inserted",
    Operation.UPDATE: "updated",
    Operation.DELETE: "deleted",
}


def record_id(source: SourceRef, operation: Operation) -> str:
    """
    Deterministic notification id.

    Inserts and deletes happen once per row. Updates can repeat, so they
    also carry the commit time in milliseconds.
    """
    base = f"{source.table}-{source.row_id}-{operation.value.lower()}"
    if operation is Operation.UPDATE:
        return f"{base}-{int(source.committed_at.timestamp() * 1000)}"
    return base


def format_score(score: float) -> str:
    return f"{score:g}"


class NotificationComposer:
    """Maps enriched facts onto the fixed wording for each category."""

    def compose(self, fact: EnrichedFact, operation: Operation) -> NotificationRecord:
        if isinstance(fact, ScoreFact):
            fields, metadata = self._score_fields(fact)
        elif isinstance(fact, AttendanceFact):
            fields, metadata = self._attendance_fields(fact)
        elif isinstance(fact, AnnouncementFact):
            fields, metadata = self._announcement_fields(fact, operation)
        else:
            raise ComposeError(f"unsupported fact type {type(fact).__name__}")

        try:
            title_tpl, message_tpl = TEMPLATES[(fact.category, operation)]
        except KeyError:
            raise ComposeError(f"no template for {fact.category.value}/{operation.value}") from None

        metadata.update(
            action=_ACTIONS[operation],
            source_table=fact.source.table,
            source_id=fact.source.row_id,
        )
        return NotificationRecord(
            id=record_id(fact.source, operation),
            title=title_tpl.format_map(fields),
            message=message_tpl.format_map(fields),
            category=fact.category,
            created_at=fact.source.committed_at,
            read=False,
            metadata=metadata,
        )

    def _score_fields(self, fact: ScoreFact) -> tuple[dict[str, str], dict[str, Any]]:
        fields = {
            "student": fact.student_name,
            "subject": fact.subject_name,
            "lesson": fact.lesson_name,
            "score": format_score(fact.score),
        }
        metadata = {
            "student_id": fact.student_id,
            "subject_id": fact.subject_id,
            "lesson_id": fact.lesson_id,
            "student_name": fact.student_name,
            "subject_name": fact.subject_name,
            "lesson_name": fact.lesson_name,
            "score": fact.score,
        }
        return fields, metadata

    def _attendance_fields(self, fact: AttendanceFact) -> tuple[dict[str, str], dict[str, Any]]:
        status = fact.status.lower()
        fields = {
            "student": fact.student_name,
            "subject": fact.subject_name,
            "lesson": fact.lesson_name,
            "status": status,
            "Status": status.capitalize(),
        }
        metadata = {
            "student_id": fact.student_id,
            "subject_id": fact.subject_id,
            "lesson_id": fact.lesson_id,
            "student_name": fact.student_name,
            "subject_name": fact.subject_name,
            "lesson_name": fact.lesson_name,
            "status": fact.status,
            "status_color": STATUS_COLORS.get(status, DEFAULT_STATUS_COLOR),
        }
        return fields, metadata

    def _announcement_fields(
        self, fact: AnnouncementFact, operation: Operation
    ) -> tuple[dict[str, str], dict[str, Any]]:
        if fact.title:
            title = fact.title
        elif operation is Operation.INSERT:
            title = "New Announcement"
        else:
            title = "Announcement"
        fields = {"title": title, "content": fact.content}
        metadata = {
            "announcement_id": fact.source.row_id,
            "audience": fact.audience,
            "important": fact.important,
        }
        return fields, metadata
