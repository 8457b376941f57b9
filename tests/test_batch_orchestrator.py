"""Tests for batch re-processing of pending items."""
from notegraph.exceptions import AIQuotaError, ErrorCategory, StorageError
from notegraph.models.schema import BatchTermination, ItemStatus
from notegraph.services.batch_orchestrator import (INTERRUPTED_MESSAGE,
                                                   BatchOrchestrator)
from tests.fakes import OTHER_OWNER, OWNER


class ExplodingProcessor:
    """Delegates to a real processor but raises for one item."""

    def __init__(self, inner, fail_on):
        self.inner = inner
        self.fail_on = fail_on
        self.calls = []

    def process_item(self, item_id, owner_id):
        self.calls.append(item_id)
        if item_id == self.fail_on:
            raise StorageError("database is locked", operation="update")
        return self.inner.process_item(item_id, owner_id)


def _five_items(make_item):
    names = ["first", "second", "third", "fourth", "fifth"]
    return [make_item(content=f"The {name} pending note") for name in names]


class TestSelection:
    def test_nothing_pending(self, orchestrator, make_ready_item, sleep_calls):
        make_ready_item()
        result = orchestrator.process_pending(OWNER)

        assert result.processed == 0
        assert result.failed == 0
        assert result.message == "No pending items"
        assert result.termination == BatchTermination.COMPLETED
        assert sleep_calls == []

    def test_pending_selection(self, item_repository, make_item, make_ready_item):
        oldest = make_item()
        errored = make_item(status=ItemStatus.ERROR, summary="kept")
        unsummarized_ready = make_ready_item(summary=None)
        make_ready_item()
        make_item(owner_id=OTHER_OWNER)

        pending = item_repository.list_pending(OWNER)

        assert [i.id for i in pending] == [oldest.id, errored.id, unsummarized_ready.id]

    def test_items_processed_oldest_first_within_owner(
        self, orchestrator, make_item, item_repository, fake_provider
    ):
        items = [make_item(content=f"Note number {n} body") for n in ("one", "two")]
        foreign = make_item(owner_id=OTHER_OWNER, content="Foreign note body")

        result = orchestrator.process_pending(OWNER)

        assert result.processed == 2
        assert result.success is True
        assert [text.split()[2] for text in fake_provider.analyze_calls] == ["one", "two"]
        for item in items:
            assert item_repository.get(item.id).status == ItemStatus.READY
        assert item_repository.get(foreign.id).status == ItemStatus.PROCESSING

    def test_delay_between_items_only(self, orchestrator, make_item, sleep_calls):
        for _ in range(3):
            make_item()

        orchestrator.process_pending(OWNER)

        assert sleep_calls == [2.0, 2.0]

    def test_zero_delay_never_sleeps(self, item_repository, processor, make_item):
        sleeps = []
        orchestrator = BatchOrchestrator(
            item_repository, processor, delay_seconds=0, sleep=sleeps.append
        )
        make_item()
        make_item()

        orchestrator.process_pending(OWNER)

        assert sleeps == []


class TestOutcomes:
    def test_quota_stops_the_batch(
        self, orchestrator, make_item, item_repository, fake_provider, sleep_calls
    ):
        items = _five_items(make_item)
        fake_provider.analyze_errors["third"] = AIQuotaError("You exceeded your quota")

        result = orchestrator.process_pending(OWNER)

        assert result.processed == 2
        assert result.failed == 3
        assert result.termination == BatchTermination.QUOTA_STOPPED
        assert result.message.startswith("Stopped: AI quota exceeded")
        assert result.success is False
        assert len(fake_provider.analyze_calls) == 3
        assert sleep_calls == [2.0, 2.0]

        for item in items[:2]:
            assert item_repository.get(item.id).status == ItemStatus.READY
        for item in items[2:]:
            stored = item_repository.get(item.id)
            assert stored.status == ItemStatus.ERROR
            assert stored.error_category == ErrorCategory.AI_QUOTA
            assert stored.error_message == ErrorCategory.AI_QUOTA.user_message

    def test_other_failures_do_not_stop_the_batch(
        self, orchestrator, make_item, item_repository, fake_provider
    ):
        items = _five_items(make_item)[:3]
        fake_provider.analyze_errors["second"] = TimeoutError("timed out")

        result = orchestrator.process_pending(OWNER)

        assert result.processed == 2
        assert result.failed == 1
        assert result.termination == BatchTermination.COMPLETED
        assert result.message == "Completed (2 processed, 1 failed, 0 skipped)"
        assert result.last_error == ErrorCategory.AI_TIMEOUT.user_message
        assert item_repository.get(items[1].id).error_category == ErrorCategory.AI_TIMEOUT
        assert item_repository.get(items[2].id).status == ItemStatus.READY

    def test_leased_item_is_skipped(
        self, orchestrator, make_item, item_repository, fake_provider
    ):
        busy, free = make_item(content="Busy note body"), make_item(content="Free note body")
        token = item_repository.claim(busy.id, OWNER, ttl_seconds=300)

        result = orchestrator.process_pending(OWNER)

        assert result.skipped == 1
        assert result.processed == 1
        assert len(fake_provider.analyze_calls) == 1
        stored = item_repository.get(busy.id)
        assert stored.status == ItemStatus.PROCESSING
        assert stored.lease_token == token
        assert item_repository.get(free.id).status == ItemStatus.READY

    def test_errored_items_are_retried(self, orchestrator, make_item, item_repository):
        item = make_item(status=ItemStatus.ERROR, error_category=ErrorCategory.AI_TIMEOUT)

        result = orchestrator.process_pending(OWNER)

        assert result.processed == 1
        assert item_repository.get(item.id).status == ItemStatus.READY


class TestInterruption:
    def test_unexpected_failure_marks_current_and_remaining(
        self, item_repository, processor, make_item, fake_provider
    ):
        items = _five_items(make_item)[:3]
        exploding = ExplodingProcessor(processor, fail_on=items[1].id)
        orchestrator = BatchOrchestrator(
            item_repository, exploding, delay_seconds=0
        )

        result = orchestrator.process_pending(OWNER)

        assert result.processed == 1
        assert result.failed == 2
        assert result.termination == BatchTermination.INTERRUPTED
        assert result.message.startswith(INTERRUPTED_MESSAGE)
        assert "database is locked" in result.last_error
        assert exploding.calls == [items[0].id, items[1].id]

        assert item_repository.get(items[0].id).status == ItemStatus.READY
        for item in items[1:]:
            stored = item_repository.get(item.id)
            assert stored.status == ItemStatus.ERROR
            assert stored.error_message == INTERRUPTED_MESSAGE
            assert stored.lease_token is None

    def test_failure_to_mark_remaining_is_reported(
        self, orchestrator, make_item, item_repository, fake_provider, monkeypatch
    ):
        _five_items(make_item)
        fake_provider.analyze_errors["first"] = AIQuotaError("quota")

        def broken_bulk_mark_error(*args, **kwargs):
            raise StorageError("disk full", operation="bulk update")

        monkeypatch.setattr(item_repository, "bulk_mark_error", broken_bulk_mark_error)

        result = orchestrator.process_pending(OWNER)

        assert result.failed == 5
        assert result.termination == BatchTermination.QUOTA_STOPPED
        assert "marking items failed" in result.last_error
        assert "disk full" in result.last_error
