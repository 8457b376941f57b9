"""Common test fixtures for Notegraph."""

import datetime
import itertools

import pytest

from notegraph.config import config
from notegraph.models.db_models import get_session_factory, init_db
from notegraph.models.schema import Item, ItemStatus, ProcessingStep, utc_now
from notegraph.services.batch_orchestrator import BatchOrchestrator
from notegraph.services.item_processor import ItemProcessor
from notegraph.storage.connection_repository import ConnectionRepository
from notegraph.storage.item_repository import ItemRepository
from tests.fakes import OWNER, FakeAnalysisProvider


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Configure with test paths and pipeline defaults (auto-restored)."""
    monkeypatch.setattr(config, "database_path", tmp_path / "test_notegraph.db")
    monkeypatch.setattr(config, "similarity_threshold", 0.3)
    monkeypatch.setattr(config, "max_connections_per_item", 5)
    monkeypatch.setattr(config, "batch_delay_seconds", 0.0)
    monkeypatch.setattr(config, "openai_api_key", None)
    yield config


@pytest.fixture
def engine(test_config):
    """Fresh in-memory database per test."""
    engine = init_db("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def item_repository(session_factory):
    return ItemRepository(session_factory)


@pytest.fixture
def connection_repository(session_factory):
    return ConnectionRepository(session_factory)


@pytest.fixture
def fake_provider():
    return FakeAnalysisProvider()


@pytest.fixture
def processor(item_repository, connection_repository, fake_provider):
    return ItemProcessor(
        item_repository,
        connection_repository,
        fake_provider,
        threshold=0.3,
        top_k=5,
        lease_ttl_seconds=300,
        min_content_chars=3,
    )


@pytest.fixture
def sleep_calls():
    return []


@pytest.fixture
def orchestrator(item_repository, processor, sleep_calls):
    return BatchOrchestrator(
        item_repository, processor, delay_seconds=2.0, sleep=sleep_calls.append
    )


@pytest.fixture
def make_item(item_repository):
    """Store an item directly, bypassing the service layer.

    Each call gets a strictly later ``created_at`` so creation order is
    unambiguous in ordering tests.
    """
    base = utc_now() - datetime.timedelta(hours=1)
    counter = itertools.count()

    def _make(**fields) -> Item:
        fields.setdefault("owner_id", OWNER)
        fields.setdefault("content", "A note about something worth remembering")
        fields.setdefault("created_at", base + datetime.timedelta(seconds=next(counter)))
        item = Item(**fields)
        item_repository.create(item)
        return item

    return _make


@pytest.fixture
def make_ready_item(make_item):
    """Store an already enriched item that can be a connection candidate."""

    def _make(**fields) -> Item:
        fields.setdefault("status", ItemStatus.READY)
        fields.setdefault("processing_step", ProcessingStep.FINALIZED)
        fields.setdefault("summary", "An enriched note")
        fields.setdefault("title", "Enriched")
        return make_item(**fields)

    return _make
