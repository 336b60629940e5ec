"""Tests for notification composition."""

from datetime import datetime, timezone

import pytest

from school_notify.composer import NotificationComposer, record_id
from school_notify.errors import ComposeError
from school_notify.models import (
    AnnouncementFact,
    AttendanceFact,
    Category,
    Operation,
    ScoreFact,
    SourceRef,
)

AT = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def score_fact(score: float = 8.0) -> ScoreFact:
    return ScoreFact(
        source=SourceRef("scores", "41", AT),
        student_id="S1",
        student_name="Alice",
        lesson_id="L1",
        lesson_name="Fractions",
        subject_id="SUB1",
        subject_name="Math",
        score=score,
    )


def attendance_fact(status: str) -> AttendanceFact:
    return AttendanceFact(
        source=SourceRef("attendance", "9", AT),
        student_id="S1",
        student_name="Alice",
        lesson_id="L1",
        lesson_name="Fractions",
        subject_id="SUB1",
        subject_name="Math",
        status=status,
    )


@pytest.fixture
def composer():
    return NotificationComposer()


def test_score_insert(composer):
    record = composer.compose(score_fact(), Operation.INSERT)
    assert record.id == "scores-41-insert"
    assert record.title == "New Score for Alice"
    assert record.message == "Alice received a score of 8 in Math (Fractions)"
    assert record.category is Category.GRADE
    assert record.created_at == AT
    assert record.read is False
    assert record.metadata["action"] == "inserted"
    assert record.metadata["student_id"] == "S1"
    assert record.metadata["subject_name"] == "Math"
    assert record.metadata["score"] == 8.0


def test_score_update_and_delete_wording(composer):
    updated = composer.compose(score_fact(9.5), Operation.UPDATE)
    assert updated.title == "Updated Score for Alice"
    assert updated.message == "Alice's score in Math (Fractions) was updated to 9.5"
    assert updated.id == f"scores-41-update-{int(AT.timestamp() * 1000)}"

    deleted = composer.compose(score_fact(), Operation.DELETE)
    assert deleted.title == "Grade Removed for Alice"
    assert deleted.metadata["action"] == "deleted"


def test_attendance_status_and_colour(composer):
    record = composer.compose(attendance_fact("Late"), Operation.INSERT)
    assert record.title == "Attendance Record: Late - Alice"
    assert record.message == "Alice was marked late in Math (Fractions)"
    assert record.metadata["status_color"] == "#FF9800"

    absent = composer.compose(attendance_fact("absent"), Operation.UPDATE)
    assert absent.title == "Attendance Update: Absent - Alice"
    assert absent.metadata["status_color"] == "#F44336"


def test_announcement_fallback_title(composer):
    fact = AnnouncementFact(source=SourceRef("announcements", "3", AT), title=None, content="School closes early")
    record = composer.compose(fact, Operation.INSERT)
    assert record.title == "New Announcement"
    assert record.message == "School closes early"
    assert record.category is Category.ANNOUNCEMENT

    removed = composer.compose(
        AnnouncementFact(source=SourceRef("announcements", "3", AT), title="Trip", content=""),
        Operation.DELETE,
    )
    assert removed.title == "Announcement Removed"
    assert removed.message == 'The announcement "Trip" has been removed'


def test_compose_is_deterministic(composer):
    assert composer.compose(score_fact(), Operation.INSERT) == composer.compose(score_fact(), Operation.INSERT)


def test_operation_distinguishes_ids():
    source = SourceRef("scores", "41", AT)
    assert record_id(source, Operation.INSERT) != record_id(source, Operation.DELETE)


def test_unknown_fact_type(composer):
    with pytest.raises(ComposeError):
        composer.compose(object(), Operation.INSERT)
