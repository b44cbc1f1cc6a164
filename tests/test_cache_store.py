# =============================================================================
# Unit Tests — Read Cache & Workflow Store
# =============================================================================
#
# WorkflowStore over the in-memory FakeRepository (conftest.py) and a
# MemoryCache with a controllable clock. Checks read-through population,
# write invalidation and the key/TTL table.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from app.db.models import WorkflowStatus
from app.models.records import AnswerRecord, NewDocument
from app.services.cache import (
    LIST_PATTERN,
    STATISTICS_KEY,
    CachePolicy,
    MemoryCache,
    RedisCache,
    create_cache,
)
from app.services.store import WorkflowStore


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# ---------------------------------------------------------------------------
# Test: CachePolicy
# ---------------------------------------------------------------------------


class TestCachePolicy:

    def test_key_formats(self):
        policy = CachePolicy()
        assert policy.key("workflow", "rfp_1") == "workflow:rfp_1"
        assert policy.key("documents", "rfp_1") == "workflow:rfp_1:documents"
        assert policy.list_key(50, 0) == "workflows:list:50:0"
        assert policy.statistics_key() == "workflow:statistics"

    def test_ttl_table(self):
        ttl = CachePolicy().ttl
        assert ttl["workflow"] == 3600
        assert ttl["results"] == 1800
        assert ttl["list"] == 300
        assert ttl["statistics"] == 300

    def test_workflow_write_invalidates_lists_and_statistics(self):
        keys, patterns = CachePolicy().stale_keys("workflow", "rfp_1")
        assert keys == ["workflow:rfp_1", STATISTICS_KEY]
        assert patterns == [LIST_PATTERN]

    def test_answer_write_is_narrow(self):
        keys, patterns = CachePolicy().stale_keys("answers", "rfp_1")
        assert keys == ["workflow:rfp_1:answers"]
        assert patterns == []

    def test_all_keys_for_covers_every_kind(self):
        keys = CachePolicy().all_keys_for("rfp_1")
        assert "workflow:rfp_1" in keys
        assert "workflow:rfp_1:questions" in keys
        assert STATISTICS_KEY in keys
        assert len(keys) == 7


# ---------------------------------------------------------------------------
# Test: MemoryCache
# ---------------------------------------------------------------------------


class TestMemoryCache:

    def test_entries_expire(self):
        clock = FakeClock()
        cache = MemoryCache(clock)
        _run(cache.set("k", {"a": 1}, ttl=10))

        assert _run(cache.get("k")) == {"a": 1}
        clock.now += 10
        assert _run(cache.get("k")) is None

    def test_delete_pattern(self):
        cache = MemoryCache()
        _run(cache.set("workflows:list:50:0", [], 300))
        _run(cache.set("workflows:list:10:10", [], 300))
        _run(cache.set("workflow:rfp_1", {}, 300))

        _run(cache.delete_pattern(LIST_PATTERN))

        assert cache.keys() == ["workflow:rfp_1"]

    def test_factory_selects_backend(self):
        assert isinstance(create_cache("memory", "redis://unused"), MemoryCache)
        assert isinstance(create_cache("redis", "redis://localhost:6379/2"), RedisCache)


# ---------------------------------------------------------------------------
# Test: RedisCache degradation
# ---------------------------------------------------------------------------


class TestRedisCacheDegradation:

    def test_read_error_is_a_miss(self):
        client = MagicMock()
        client.get = AsyncMock(side_effect=RedisConnectionError("refused"))
        cache = RedisCache("redis://unused", client=client)

        assert _run(cache.get("workflow:rfp_1")) is None

    def test_write_error_is_swallowed(self):
        client = MagicMock()
        client.set = AsyncMock(side_effect=RedisConnectionError("refused"))
        cache = RedisCache("redis://unused", client=client)

        _run(cache.set("workflow:rfp_1", {"id": "rfp_1"}, 60))
        client.set.assert_awaited_once()

    def test_values_are_json_encoded(self):
        client = MagicMock()
        client.set = AsyncMock()
        client.get = AsyncMock(return_value='{"id": "rfp_1"}')
        cache = RedisCache("redis://unused", client=client)

        _run(cache.set("workflow:rfp_1", {"id": "rfp_1"}, 60))

        assert client.set.call_args.args == ("workflow:rfp_1", '{"id": "rfp_1"}')
        assert client.set.call_args.kwargs == {"ex": 60}
        assert _run(cache.get("workflow:rfp_1")) == {"id": "rfp_1"}


# ---------------------------------------------------------------------------
# Test: WorkflowStore cache-aside
# ---------------------------------------------------------------------------


class TestWorkflowStore:

    def test_miss_populates_only_the_missed_key(self, repository):
        cache = MemoryCache(FakeClock())
        store = WorkflowStore(repository, cache)
        _run(store.create_workflow("rfp_1", {"title": "Platform"}))
        assert cache.keys() == []

        record = _run(store.get_workflow("rfp_1"))

        assert record.id == "rfp_1"
        assert cache.keys() == ["workflow:rfp_1"]
        assert cache.ttl_of("workflow:rfp_1") == 3600

    def test_second_read_hits_cache(self, store, repository):
        _run(store.create_workflow("rfp_1"))
        _run(store.get_workflow("rfp_1"))
        _run(store.get_workflow("rfp_1"))

        assert repository.calls.count("get_workflow") == 1

    def test_cached_record_keeps_types(self, store):
        _run(store.create_workflow("rfp_1"))
        _run(store.update_workflow("rfp_1", status=WorkflowStatus.RUNNING, progress=30))
        _run(store.get_workflow("rfp_1"))

        cached = _run(store.get_workflow("rfp_1"))

        assert cached.status == WorkflowStatus.RUNNING
        assert cached.progress == 30
        assert cached.updated_at is not None

    def test_update_invalidates_workflow_list_and_statistics(self, store, cache):
        _run(store.create_workflow("rfp_1"))
        _run(store.get_workflow("rfp_1"))
        _run(store.list_workflows(50, 0))
        _run(store.get_statistics())
        assert len(cache.keys()) == 3

        _run(store.update_workflow("rfp_1", progress=10))

        assert cache.keys() == []
        assert _run(store.get_workflow("rfp_1")).progress == 10

    def test_document_write_leaves_workflow_key(self, store, cache):
        _run(store.create_workflow("rfp_1"))
        docs = _run(store.create_documents("rfp_1", [NewDocument(original_name="rfp.pdf")]))
        _run(store.get_workflow("rfp_1"))
        _run(store.get_documents("rfp_1"))

        _run(store.update_document("rfp_1", docs[0].id, content="text"))

        assert "workflow:rfp_1" in cache.keys()
        assert "workflow:rfp_1:documents" not in cache.keys()

    def test_replace_answers_keeps_one_set(self, store, repository):
        _run(store.create_workflow("rfp_1"))
        first = [AnswerRecord(question_id="q1", answer_text="old")]
        second = [
            AnswerRecord(question_id="q1", answer_text="new"),
            AnswerRecord(question_id="q2", answer_text="added"),
        ]

        _run(store.replace_answers("rfp_1", first))
        assert [a.answer_text for a in _run(store.get_answers("rfp_1"))] == ["old"]
        _run(store.replace_answers("rfp_1", second))

        answers = _run(store.get_answers("rfp_1"))
        assert [a.answer_text for a in answers] == ["new", "added"]
        assert repository.calls.count("get_answers") == 2

    def test_result_map_by_step(self, store):
        _run(store.create_workflow("rfp_1"))
        _run(store.save_result("rfp_1", "document_ingestion", [{"fileName": "a"}], 0.9, 12))
        _run(store.save_result("rfp_1", "document_ingestion", [{"fileName": "b"}], 0.9, 15))

        results = _run(store.get_result_map("rfp_1"))

        assert results == {"document_ingestion": [{"fileName": "b"}]}

    def test_delete_clears_every_key(self, store, cache):
        _run(store.create_workflow("rfp_1"))
        _run(store.get_workflow("rfp_1"))
        _run(store.get_documents("rfp_1"))
        _run(store.list_workflows(50, 0))

        assert _run(store.delete_workflow("rfp_1")) is True
        assert cache.keys() == []
        assert _run(store.get_workflow("rfp_1")) is None
