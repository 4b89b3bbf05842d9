"""
Tests for the JSON-file cache store.
"""

import asyncio
import json

import pytest
from langchain_core.documents import Document

from legal_rag.cache import CacheConfig, CacheEntry, SimilarityCache
from legal_rag.cache_store import JsonFileCacheStore


@pytest.mark.asyncio
async def test_load_missing_file_is_empty(tmp_path):
    store = JsonFileCacheStore(tmp_path / "cache.json")

    snapshot = await store.load()

    assert snapshot == {"embeddings": {}, "retrievals": {}}


@pytest.mark.asyncio
async def test_save_then_load_rebuilds_documents(tmp_path):
    store = JsonFileCacheStore(tmp_path / "cache.json")
    doc = Document(page_content="Article 4: notice period.", metadata={"doc_id": "d1"})

    await store.save(
        {
            "embeddings": {"k1": CacheEntry([0.5, 0.25], 10.0, 20.0)},
            "retrievals": {"k2": CacheEntry([doc], 10.0, 20.0)},
        }
    )
    snapshot = await store.load()

    assert snapshot["embeddings"]["k1"].value == [0.5, 0.25]
    assert snapshot["embeddings"]["k1"].expires_at == 20.0
    loaded = snapshot["retrievals"]["k2"].value[0]
    assert isinstance(loaded, Document)
    assert loaded.page_content == "Article 4: notice period."
    assert loaded.metadata == {"doc_id": "d1"}


@pytest.mark.asyncio
async def test_save_leaves_no_temp_file(tmp_path):
    path = tmp_path / "cache.json"
    store = JsonFileCacheStore(path)

    await store.save({"embeddings": {}, "retrievals": {}})

    assert json.loads(path.read_text(encoding="utf-8")) == {"embeddings": {}, "retrievals": {}}
    assert list(tmp_path.glob("*.tmp")) == []


@pytest.mark.asyncio
async def test_cache_survives_restart(tmp_path):
    """Entries persisted by one cache instance are served by the next."""
    path = tmp_path / "cache.json"
    config = CacheConfig(persist=True)
    calls = []

    async def embed(text):
        calls.append(text)
        return [1.0, 0.0]

    first = await SimilarityCache.open(config, store=JsonFileCacheStore(path))
    await first.get_or_compute_embedding("notice period", embed)
    await first.close()

    second = await SimilarityCache.open(config, store=JsonFileCacheStore(path))
    assert await second.get_or_compute_embedding("notice period", embed) == [1.0, 0.0]
    assert calls == ["notice period"]


@pytest.mark.asyncio
async def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text("{not json", encoding="utf-8")

    cache = await SimilarityCache.open(CacheConfig(persist=True), store=JsonFileCacheStore(path))

    assert cache.stats()["embedding_cache_size"] == 0


@pytest.mark.asyncio
async def test_concurrent_inserts_all_reach_disk(tmp_path):
    """Saves triggered by concurrent lookups never fail or lose entries."""
    path = tmp_path / "cache.json"
    cache = await SimilarityCache.open(CacheConfig(persist=True), store=JsonFileCacheStore(path))

    async def embed(text):
        await asyncio.sleep(0)
        return [1.0, float(len(text))]

    await asyncio.gather(
        *(cache.get_or_compute_embedding(f"question {i}", embed) for i in range(40))
    )

    snapshot = await JsonFileCacheStore(path).load()
    assert len(snapshot["embeddings"]) == 40
    assert cache.stats()["embedding_cache_size"] == 40
    assert list(tmp_path.glob("*.tmp")) == []


@pytest.mark.asyncio
async def test_save_failure_removes_temp_file(tmp_path):
    """A snapshot that cannot replace the target leaves no temp file behind."""
    target = tmp_path / "cache.json"
    target.mkdir()
    (target / "occupied").write_text("x", encoding="utf-8")

    with pytest.raises(OSError):
        await JsonFileCacheStore(target).save({"embeddings": {}, "retrievals": {}})

    assert list(tmp_path.glob("*.tmp")) == []
