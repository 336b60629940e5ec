"""
Shared fixtures: a small school (one parent with one child, a second parent
with another child), fakes for every external collaborator, and a fully
wired pipeline.
"""

import pytest

from school_notify.composer import NotificationComposer
from school_notify.dedup import Deduplicator
from school_notify.enricher import EventEnricher
from school_notify.metrics import MetricsCollector
from school_notify.pipeline import NotificationPipeline
from school_notify.store import NotificationStore
from school_notify.subscriptions import RetryPolicy

from .fakes import FakeChangeStream, FakeLookup, MemoryKV, RecordingSink


@pytest.fixture
def school_tables():
    return {
        "users": {
            "S1": {"id": "S1", "firstName": "Alice", "lastName": "", "role": "Student", "parent_id": "P1"},
            "S2": {"id": "S2", "firstName": "Ben", "lastName": "Okafor", "role": "Student", "parent_id": "P2"},
        },
        "lessons": {
            "L1": {"id": "L1", "lessonname": "Fractions", "subjectid": "SUB1"},
            "L2": {"id": "L2", "lessonname": "Photosynthesis", "subjectid": "SUB2"},
        },
        "subjects": {
            "SUB1": {"id": "SUB1", "subjectname": "Math"},
            "SUB2": {"id": "SUB2", "subjectname": "Biology"},
        },
    }


@pytest.fixture
def lookup(school_tables):
    return FakeLookup(school_tables)


@pytest.fixture
def stream():
    return FakeChangeStream()


@pytest.fixture
def kv():
    return MemoryKV()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_retries=3, base_seconds=0.01, max_seconds=0.05, ready_timeout=0.2)


@pytest.fixture
def store(kv, metrics):
    return NotificationStore(kv, metrics=metrics)


@pytest.fixture
def dedup(kv, metrics):
    return Deduplicator(kv, metrics=metrics)


@pytest.fixture
def pipeline(lookup, dedup, store, sink, metrics):
    return NotificationPipeline(
        enricher=EventEnricher(lookup),
        composer=NotificationComposer(),
        dedup=dedup,
        store=store,
        sink=sink,
        metrics=metrics,
    )
