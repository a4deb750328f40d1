#!/usr/bin/env python3
"""
Test suite for the Context Memory MCP tools.

Run with: pytest test_server.py -v
"""

import asyncio

import pytest

from config import Config
from embedder import HashingEmbedder, OllamaEmbedder
from models import VALID_KINDS, SearchOptions
from search import search_memories
from server import MemoryTools, build_embedder, create_server, open_store
from store import MemoryStore


@pytest.fixture
def tools():
    return MemoryTools(MemoryStore(HashingEmbedder()))


def saved_id(result: str) -> str:
    """Extract partial UUID from "Saved (ID: abc12345..., kind)"."""
    return result.split("ID: ")[1].split("...")[0]


# =============================================================================
# Construction
# =============================================================================


class TestConstruction:
    """Tests for the host-side factories."""

    def test_build_embedder_hash(self):
        embedder = build_embedder(Config(embedding_provider="hash", embedding_dim=128))
        assert isinstance(embedder, HashingEmbedder)
        assert embedder.dimension == 128

    def test_build_embedder_ollama(self):
        embedder = build_embedder(Config(embedding_provider="OLLAMA", embedding_dim=256))
        assert isinstance(embedder, OllamaEmbedder)
        assert embedder.dimension == 256

    def test_build_embedder_unknown_falls_back(self, capsys):
        assert isinstance(build_embedder(Config(embedding_provider="magic")), HashingEmbedder)
        assert "Unknown embedding provider" in capsys.readouterr().err

    def test_open_store_persists(self, tmp_path):
        config = Config(db_path=tmp_path / "lancedb-memory", embedding_dim=64)
        store = open_store(config)
        store.insert("code", "persist me")
        store.close()
        assert open_store(config).count() == 1

    def test_open_store_in_memory(self):
        assert open_store(Config(), persist=False).snapshot is None

    async def test_server_registers_tools(self, tools):
        mcp = create_server(tools)
        names = {tool.name for tool in await mcp.list_tools()}
        assert names == {
            "memory_save",
            "memory_recall",
            "memory_get",
            "memory_update",
            "memory_delete",
            "memory_stats",
            "memory_context",
            "decision_record",
            "pattern_analyze",
        }


# =============================================================================
# Core CRUD Tests
# =============================================================================


class TestMemorySave:
    """Tests for memory_save tool."""

    async def test_save_basic(self, tools):
        result = await tools.memory_save(content="Basic save test", kind="issue", tags=["test", "pytest"])
        assert "Saved" in result
        assert "issue" in result
        assert "..." in result
        assert tools.store.count() == 1

    async def test_save_empty_content_fails(self, tools):
        result = await tools.memory_save(content="")
        assert "Error" in result

    async def test_save_whitespace_only_fails(self, tools):
        result = await tools.memory_save(content="   \n\t  ")
        assert "Error" in result

    async def test_save_invalid_kind_fails(self, tools):
        result = await tools.memory_save(content="test", kind="INVALID")
        assert "Error" in result
        assert "Invalid kind" in result
        assert tools.store.count() == 0

    async def test_save_kind_case_insensitive(self, tools):
        result = await tools.memory_save(content="test", kind="DECISION")
        assert "decision" in result

    async def test_save_all_valid_kinds(self, tools):
        for kind in VALID_KINDS:
            result = await tools.memory_save(content=f"{kind} test", kind=kind)
            assert "Saved" in result, f"Failed for {kind}"

    async def test_save_invalid_importance_fails(self, tools):
        result = await tools.memory_save(content="test", importance=2.0)
        assert "Error" in result


class TestMemoryRecall:
    """Tests for memory_recall tool."""

    async def test_recall_semantic(self, tools):
        await tools.memory_save(content="use repository pattern for data access", kind="pattern")
        result = await tools.memory_recall(query="repository pattern", threshold=0.1)
        assert result.startswith("Found 1 memories")
        assert "Matched: content" in result

    async def test_recall_empty_query_finds_nothing(self, tools):
        await tools.memory_save(content="something stored")
        result = await tools.memory_recall(query="", threshold=0.5)
        assert result.startswith("No memories")

    async def test_recall_with_kind_filter(self, tools):
        await tools.memory_save(content="pick postgres", kind="decision")
        await tools.memory_save(content="pick postgres", kind="conversation")
        result = await tools.memory_recall(query="pick postgres", kinds=["decision"])
        assert result.startswith("Found 1 memories")
        assert "decision" in result

    async def test_recall_invalid_kind_fails(self, tools):
        result = await tools.memory_recall(query="test", kinds=["INVALID"])
        assert "Invalid kind" in result

    async def test_recall_limit_bounds(self, tools):
        assert "Error" in await tools.memory_recall(query="x", limit=0)
        assert "Error" in await tools.memory_recall(query="x", limit=51)

    async def test_recall_invalid_since(self, tools):
        result = await tools.memory_recall(query="x", since="last tuesday")
        assert "Invalid since" in result

    async def test_recall_time_window(self, tools):
        await tools.memory_save(content="deploy freeze friday")
        assert (await tools.memory_recall(query="deploy freeze friday", since="2000-01-01")).startswith("Found")
        assert (await tools.memory_recall(query="deploy freeze friday", until="2000-01-01")).startswith("No memories")

    async def test_recall_offset_aware_window(self, tools):
        await tools.memory_save(content="deploy freeze friday")
        since = await tools.memory_recall(query="deploy freeze friday", since="2000-01-01T00:00:00+00:00")
        assert since.startswith("Found 1 memories")
        until = await tools.memory_recall(query="deploy freeze friday", until="2000-01-01T00:00:00+02:00")
        assert until.startswith("No memories")


class TestMemoryGetUpdateDelete:
    """Tests for memory_get, memory_update and memory_delete."""

    async def test_get(self, tools):
        memory_id = saved_id(await tools.memory_save(content="details here", context="review", tags=["x"]))
        result = await tools.memory_get(memory_id)
        assert "details here" in result
        assert "Context: review" in result
        assert "Tags: x" in result

    async def test_get_nonexistent(self, tools):
        assert "not found" in await tools.memory_get("nonexistent123")

    async def test_update_content(self, tools):
        memory_id = saved_id(await tools.memory_save(content="Original content"))
        result = await tools.memory_update(memory_id=memory_id, content="Updated content")
        assert "Updated" in result
        [entry] = tools.store.all()
        assert entry.content == "Updated content"
        assert entry.embedding == HashingEmbedder().embed(entry.embedding_text())

    async def test_update_nonexistent_fails(self, tools):
        result = await tools.memory_update(memory_id="nonexistent123", importance=0.9)
        assert "not found" in result
        assert tools.store.count() == 0

    async def test_update_invalid_kind_fails(self, tools):
        memory_id = saved_id(await tools.memory_save(content="test"))
        result = await tools.memory_update(memory_id=memory_id, kind="INVALID")
        assert "Invalid kind" in result

    async def test_update_nothing(self, tools):
        memory_id = saved_id(await tools.memory_save(content="test"))
        assert "nothing to update" in await tools.memory_update(memory_id=memory_id)

    async def test_delete_existing(self, tools):
        memory_id = saved_id(await tools.memory_save(content="To delete."))
        assert "Deleted" in await tools.memory_delete(memory_id=memory_id)
        assert "not found" in await tools.memory_delete(memory_id=memory_id)

    async def test_delete_ambiguous_prefix(self, tools):
        for i in range(40):
            await tools.memory_save(content=f"memory {i}")
        # 40 uuids over 16 leading hex digits always share at least one first character
        prefixes = [entry.id[0] for entry in tools.store.all()]
        shared = next(p for p in prefixes if prefixes.count(p) > 1)
        result = await tools.memory_delete(memory_id=shared)
        assert "Ambiguous ID prefix" in result
        assert tools.store.count() == 40


class TestStatsAndContext:
    """Tests for memory_stats, memory_context, decision_record and pattern_analyze."""

    async def test_stats_empty(self, tools):
        assert await tools.memory_stats() == "No memories stored yet."

    async def test_stats_structure(self, tools):
        await tools.memory_save(content="a", kind="issue", tags=["bug"])
        await tools.memory_save(content="b", kind="solution", tags=["bug"])
        result = await tools.memory_stats()
        assert "Total: 2 memories" in result
        assert "issue: 1" in result
        assert "bug: 2" in result
        assert "in-memory only" in result

    async def test_context(self, tools):
        await tools.decision_record(decision="cache sessions in redis", impact="high")
        result = await tools.memory_context("cache sessions in redis")
        assert "Memories (1)" in result
        assert "DecisionRecord: cache sessions in redis" in result
        assert "Previous decision: cache sessions in redis" in result

    async def test_context_current_file(self, tools):
        await tools.decision_record(decision="cache sessions in redis", related_files=["session.py"])
        result = await tools.memory_context("redis", current_file="session.py")
        assert "Decision affecting session.py: cache sessions in redis" in result
        assert "Decision affecting" not in await tools.memory_context("redis")

    async def test_decision_joins_current_project(self, tools):
        project_id = tools.projects.create("shop", "/srv/shop")
        await tools.decision_record(decision="cache sessions in redis")
        assert [d.decision for d in tools.projects.get(project_id).decisions] == ["cache sessions in redis"]

    async def test_decision_invalid_impact(self, tools):
        assert "Invalid impact" in await tools.decision_record(decision="x", impact="huge")

    async def test_pattern_analyze(self, tools):
        code = "app.get('/health', ok)\nrouter.delete('/items/:id', remove)"
        result = await tools.pattern_analyze(code, "routes.js")
        assert "Found 2 patterns" in result
        assert "api: GET /health" in result
        assert "No patterns found" in await tools.pattern_analyze("x = 1", "a.py")


class TestConcurrency:
    """Tests for concurrent operations against one store."""

    async def test_concurrent_saves(self, tools):
        topics = ["quantum computing", "machine learning", "database tuning", "network security"]
        results = await asyncio.gather(
            *(asyncio.to_thread(tools.store.insert, "conversation", f"{t} {i}") for i, t in enumerate(topics * 5))
        )
        assert len(set(results)) == 20
        assert tools.store.count() == 20

    async def test_concurrent_mixed_operations(self, tools):
        """Updates and searches run on worker threads against the shared store."""
        store = tools.store
        memory_id = store.insert("conversation", "Baseline for stress test")
        options = SearchOptions(threshold=0.0, limit=50)
        tasks = []
        for i in range(5):
            tasks.extend(
                [
                    asyncio.to_thread(store.insert, "conversation", f"Stress {i}"),
                    asyncio.to_thread(search_memories, store, "stress test", options),
                    asyncio.to_thread(store.update, memory_id, content=f"Baseline v{i}"),
                    tools.memory_stats(),
                ]
            )
        results = await asyncio.gather(*tasks, return_exceptions=True)
        errors = [r for r in results if isinstance(r, Exception)]
        assert errors == []
        embedder = HashingEmbedder()
        for result in results:
            if isinstance(result, list):
                for hit in result:
                    assert hit.entry.embedding == embedder.embed(hit.entry.embedding_text())
        for entry in store.all():
            assert entry.embedding == embedder.embed(entry.embedding_text())
        assert store.count() == 6
