from __future__ import annotations

"""Tenant-scoped chroma vector index over crawled section content."""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import chromadb

logger = logging.getLogger("leadflow.knowledge")

COLLECTION_NAME = "documents"
DEFAULT_CHUNK_CHARS = 1000


class VectorIndex:
    """Store and query section chunks with precomputed embeddings."""

    def __init__(self, path: Optional[Path] = None, client: Any = None, collection_name: str = COLLECTION_NAME) -> None:
        if client is None:
            client = chromadb.PersistentClient(path=str(path)) if path else chromadb.EphemeralClient()
        self._client = client
        self._collection = client.get_or_create_collection(
            name=collection_name,
            metadata={"description": "Crawled page chunks for diagnostic retrieval"},
        )

    def add_chunks(
        self,
        tenant_id: str,
        url: str,
        chunks: Sequence[str],
        embeddings: Sequence[Sequence[float]],
    ) -> int:
        """Purpose: Add embedded chunks for one page, tagged with tenant and URL.
        Inputs/Outputs: Inputs are tenant/url, chunk texts and their vectors; returns count added.
        Side Effects / State: Writes to the chroma collection.
        Dependencies: chromadb collection.upsert; re-adding an id overwrites it.
        Failure Modes: Mismatched lengths raise ValueError; chroma errors propagate.
        If Removed: Diagnostic generation retrieves no page context.
        Testing Notes: Add two chunks and query with the tenant filter.
        """
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        if not chunks:
            return 0
        self._collection.upsert(
            ids=[f"{tenant_id}::{url}::{index}" for index in range(len(chunks))],
            documents=list(chunks),
            embeddings=[list(vector) for vector in embeddings],
            metadatas=[{"tenant_id": tenant_id, "url": url, "chunk_index": index} for index in range(len(chunks))],
        )
        logger.info("step=index tenant=%s url=%s chunks=%s", tenant_id, url, len(chunks))
        return len(chunks)

    def delete_page(self, tenant_id: str, url: str) -> None:
        """Drop every chunk previously indexed for this tenant's page."""
        self._collection.delete(where={"$and": [{"tenant_id": tenant_id}, {"url": url}]})

    def query(self, vector: Sequence[float], tenant_id: str, top_k: int = 3) -> List[str]:
        """Return the top_k most similar chunk texts for the tenant, best first."""
        if top_k <= 0:
            return []
        results: Dict[str, Any] = self._collection.query(
            query_embeddings=[list(vector)],
            n_results=top_k,
            where={"tenant_id": tenant_id},
        )
        documents = results.get("documents") or [[]]
        return [doc for doc in (documents[0] or []) if doc][:top_k]


def chunk_text(text: str, chunk_size: int = DEFAULT_CHUNK_CHARS) -> List[str]:
    """Purpose: Split text into chunks of at most chunk_size characters.
    Inputs/Outputs: Input is text and a size limit; output is a list of chunk strings.
    Side Effects / State: None.
    Dependencies: Uses _split_long_content for oversized paragraphs and chunks.
    Failure Modes: Empty input returns empty list.
    If Removed: Whole sections are embedded as one vector and retrieval blurs.
    Testing Notes: Paragraphs pack together until the limit; long ones split by sentence.
    """
    if not text or not text.strip():
        return []

    chunks: List[str] = []
    current = ""
    for para in re.split(r"\n\s*\n", text):
        para = para.strip()
        if not para:
            continue
        if len(para) > chunk_size:
            if current:
                chunks.append(current)
                current = ""
            for sentence in re.split(r"(?<=[.!?])\s+", para):
                sentence = sentence.strip()
                if not sentence:
                    continue
                if current and len(current) + 1 + len(sentence) > chunk_size:
                    chunks.append(current)
                    current = sentence
                else:
                    current = f"{current} {sentence}" if current else sentence
            continue
        if current and len(current) + 2 + len(para) > chunk_size:
            chunks.append(current)
            current = para
        else:
            current = f"{current}\n\n{para}" if current else para
    if current:
        chunks.append(current)

    final: List[str] = []
    for chunk in chunks:
        final.extend(_split_long_content(chunk, chunk_size))
    return final


def _split_long_content(content: str, max_chars: int) -> List[str]:
    if len(content) <= max_chars:
        return [content]
    parts: List[str] = []
    current = ""
    for word in content.split():
        if current and len(current) + 1 + len(word) > max_chars:
            parts.append(current)
            current = word
        else:
            current = f"{current} {word}" if current else word
    if current:
        parts.append(current)
    return parts
