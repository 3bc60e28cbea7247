"""Shared fixtures: in-memory storage and a counting fake transcoder."""

import pytest

from adapters.memory import MemoryObjectStore, MemoryRecordStore
from pipeline.orchestrator import AudiobookOrchestrator
from tests.fakes import FakeTranscoder


@pytest.fixture
def fake_transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def objects() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def records() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def orchestrator(objects, records, fake_transcoder) -> AudiobookOrchestrator:
    return AudiobookOrchestrator(objects, records, fake_transcoder, unclaimed_user_id="unclaimed")
