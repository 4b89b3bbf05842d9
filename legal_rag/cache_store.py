"""
JSON-file durable store for SimilarityCache snapshots.

File layout:
    {
      "embeddings": {key: {"value": [...], "created_at": ts, "expires_at": ts}},
      "retrievals": {key: {"value": [{"page_content": ..., "metadata": {...}}],
                           "created_at": ts, "expires_at": ts}}
    }

Design decisions:
- Same entry shape as in memory (value / created_at / expires_at)
- Documents rebuilt as LangChain Documents on load
- Payload building, JSON encoding and file I/O all run in a worker thread
  (asyncio.to_thread) so the event loop is never blocked
- Atomic write: each save writes its own temp file in the target directory,
  then replaces the snapshot, so a crash or a concurrent save never leaves
  a half-written snapshot
- Errors propagate; SimilarityCache catches and logs them
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from langchain_core.documents import Document

from .cache import CacheEntry


def _document_to_dict(doc: Any) -> dict[str, Any]:
    return {"page_content": doc.page_content, "metadata": dict(doc.metadata or {})}


def _entry_to_dict(entry: CacheEntry, value: Any) -> dict[str, Any]:
    return {"value": value, "created_at": entry.created_at, "expires_at": entry.expires_at}


def _snapshot_to_payload(snapshot: dict[str, dict[str, CacheEntry]]) -> dict[str, Any]:
    return {
        "embeddings": {
            key: _entry_to_dict(entry, list(entry.value))
            for key, entry in snapshot.get("embeddings", {}).items()
        },
        "retrievals": {
            key: _entry_to_dict(entry, [_document_to_dict(d) for d in entry.value])
            for key, entry in snapshot.get("retrievals", {}).items()
        },
    }


class JsonFileCacheStore:
    """Persist cache snapshots to a single JSON file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def load(self) -> dict[str, dict[str, CacheEntry]]:
        return await asyncio.to_thread(self._read)

    async def save(self, snapshot: dict[str, dict[str, CacheEntry]]) -> None:
        await asyncio.to_thread(self._write, snapshot)

    def _read(self) -> dict[str, dict[str, CacheEntry]]:
        if not self.path.exists():
            return {"embeddings": {}, "retrievals": {}}

        raw = json.loads(self.path.read_text(encoding="utf-8"))

        embeddings = {
            key: CacheEntry(
                value=[float(x) for x in item["value"]],
                created_at=float(item["created_at"]),
                expires_at=float(item["expires_at"]),
            )
            for key, item in raw.get("embeddings", {}).items()
        }
        retrievals = {
            key: CacheEntry(
                value=[
                    Document(page_content=d["page_content"], metadata=d.get("metadata") or {})
                    for d in item["value"]
                ],
                created_at=float(item["created_at"]),
                expires_at=float(item["expires_at"]),
            )
            for key, item in raw.get("retrievals", {}).items()
        }
        return {"embeddings": embeddings, "retrievals": retrievals}

    def _write(self, snapshot: dict[str, dict[str, CacheEntry]]) -> None:
        data = json.dumps(_snapshot_to_payload(snapshot), ensure_ascii=False)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=self.path.name + ".",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp.write(data)
        try:
            os.replace(tmp.name, self.path)
        except OSError:
            os.unlink(tmp.name)
            raise
