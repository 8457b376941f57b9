"""Tests for connection storage and edge materialization."""
import pytest
from sqlalchemy.exc import IntegrityError

from notegraph.config import config
from notegraph.exceptions import ErrorCode, InvalidConnectionError
from notegraph.models.schema import Item
from notegraph.services.edge_materializer import EdgeMaterializer
from notegraph.services.similarity import ScoredCandidate, SimilarityMethod


@pytest.fixture
def pair(make_ready_item):
    return make_ready_item(id="item-b"), make_ready_item(id="item-a")


class TestConnectionRepository:
    def test_upsert_stores_canonical_pair(self, connection_repository, pair):
        b, a = pair
        connection = connection_repository.upsert(b.id, a.id, 0.8, "Related.")
        assert (connection.low_id, connection.high_id) == ("item-a", "item-b")
        assert connection.similarity == pytest.approx(0.8)

    def test_either_order_updates_the_same_row(self, connection_repository, pair):
        b, a = pair
        first = connection_repository.upsert(a.id, b.id, 0.5, "First.")
        second = connection_repository.upsert(b.id, a.id, 0.9, "Second.")

        assert second.id == first.id
        assert connection_repository.count_for_owner_items([a.id, b.id]) == 1
        stored = connection_repository.get(b.id, a.id)
        assert stored.similarity == pytest.approx(0.9)
        assert stored.explanation == "Second."

    def test_self_connection_rejected(self, connection_repository, pair):
        _, a = pair
        with pytest.raises(InvalidConnectionError) as exc_info:
            connection_repository.upsert(a.id, a.id, 1.0, "Self.")
        assert exc_info.value.code == ErrorCode.CONNECTION_SELF_REFERENCE

    def test_concurrent_insert_falls_back_to_update(
        self, connection_repository, pair, monkeypatch
    ):
        b, a = pair
        connection_repository.upsert(a.id, b.id, 0.4, "Original.")

        def racing_insert(*args, **kwargs):
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(connection_repository, "_insert_or_update", racing_insert)
        connection = connection_repository.upsert(a.id, b.id, 0.7, "Retried.")

        assert connection.explanation == "Retried."
        assert connection_repository.count_for_owner_items([a.id]) == 1

    def test_list_for_item_strongest_first(self, connection_repository, make_ready_item):
        hub = make_ready_item()
        weak, strong = make_ready_item(), make_ready_item()
        connection_repository.upsert(hub.id, weak.id, 0.4, "Weak.")
        connection_repository.upsert(strong.id, hub.id, 0.9, "Strong.")

        listed = connection_repository.list_for_item(hub.id)

        assert [c.other(hub.id) for c in listed] == [strong.id, weak.id]
        assert [c.other(weak.id) for c in connection_repository.list_for_item(weak.id)] == [
            hub.id
        ]

    def test_delete_for_item(self, connection_repository, make_ready_item):
        hub, x, y = make_ready_item(), make_ready_item(), make_ready_item()
        connection_repository.upsert(hub.id, x.id, 0.5, "x")
        connection_repository.upsert(y.id, hub.id, 0.5, "y")
        connection_repository.upsert(x.id, y.id, 0.5, "xy")

        assert connection_repository.delete_for_item(hub.id) == 2
        assert connection_repository.list_for_item(hub.id) == []
        assert connection_repository.get(x.id, y.id) is not None

    def test_deleting_an_item_removes_its_connections(
        self, item_repository, connection_repository, pair
    ):
        b, a = pair
        connection_repository.upsert(a.id, b.id, 0.5, "Related.")

        assert item_repository.delete(a.id) is True
        assert connection_repository.list_for_item(b.id) == []
        assert item_repository.delete(a.id) is False


class FailingExplainer:
    def __init__(self, error=None, answer=None):
        self.error = error
        self.answer = answer

    def explain(self, text_a, text_b):
        if self.error is not None:
            raise self.error
        return self.answer


class TestEdgeMaterializer:
    def _candidate(self, item, similarity=0.8):
        return ScoredCandidate(item=item, similarity=similarity, method=SimilarityMethod.EMBEDDING)

    def test_materialize_writes_each_candidate(
        self, connection_repository, fake_provider, make_ready_item
    ):
        item, x, y = make_ready_item(), make_ready_item(), make_ready_item()
        materializer = EdgeMaterializer(connection_repository, fake_provider)

        written = materializer.materialize(
            item, [self._candidate(x, 0.9), self._candidate(y, 0.6)]
        )

        assert [c.other(item.id) for c in written] == [x.id, y.id]
        assert all(c.explanation == fake_provider.explanation for c in written)
        assert len(fake_provider.explain_calls) == 2

    @pytest.mark.parametrize(
        "explainer",
        [
            FailingExplainer(error=ValueError("bad json")),
            FailingExplainer(error=KeyError("choices")),
            FailingExplainer(answer="   "),
            FailingExplainer(answer=None),
        ],
    )
    def test_fallback_explanation(self, connection_repository, make_ready_item, explainer):
        item, other = make_ready_item(), make_ready_item()
        materializer = EdgeMaterializer(connection_repository, explainer)

        [connection] = materializer.materialize(item, [self._candidate(other)])

        assert connection.explanation == config.fallback_explanation

    def test_custom_fallback(self, connection_repository, make_ready_item):
        materializer = EdgeMaterializer(
            connection_repository,
            FailingExplainer(error=ValueError("x")),
            fallback_explanation="Linked.",
        )
        assert materializer.explain(Item(owner_id="u"), Item(owner_id="u")) == "Linked."

    def test_explanation_is_stripped(self, connection_repository):
        materializer = EdgeMaterializer(
            connection_repository, FailingExplainer(answer="  Both about tea.\n")
        )
        assert materializer.explain(Item(owner_id="u"), Item(owner_id="u")) == "Both about tea."

    def test_storage_failure_propagates(self, connection_repository, make_ready_item, fake_provider):
        item = make_ready_item()
        materializer = EdgeMaterializer(connection_repository, fake_provider)
        with pytest.raises(InvalidConnectionError):
            materializer.materialize(item, [self._candidate(item)])
