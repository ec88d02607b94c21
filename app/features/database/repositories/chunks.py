"""
Knowledge Chunks Repository.

A chunk slot is identified by (chatbot_id, source_type, source_url,
chunk_index); writes are upserts on that key, so re-indexing a source
replaces its chunks in place.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from app.features.database.models import KnowledgeChunk, SourceType, utc_iso
from app.features.database.repositories.vector_search import SCAN_LIMIT, match_or_scan

logger = logging.getLogger("Chatbot.Database.Chunks")

TABLE = "knowledge_chunks"
SLOT_KEY = "chatbot_id,source_type,source_url,chunk_index"
RETRIEVAL_COLUMNS = "id, chatbot_id, source_type, source_url, source_title, chunk_index, chunk_text, content_hash, metadata"


class ChunksRepository:
    """Repository for knowledge chunk operations."""

    def __init__(self, client):
        self.client = client

    def list_for_source(self, chatbot_id: str, source_type: SourceType, source_url: str) -> List[KnowledgeChunk]:
        """Existing chunks of one source (with vectors), in ordinal order."""
        result = self.client.table(TABLE).select("*").eq(
            "chatbot_id", chatbot_id
        ).eq("source_type", source_type.value).eq(
            "source_url", source_url
        ).order("chunk_index").execute()
        return [KnowledgeChunk.model_validate(row) for row in result.data or []]

    def list_for_retrieval(self, chatbot_id: str, limit: int = SCAN_LIMIT) -> List[KnowledgeChunk]:
        """All chunks of a chatbot without their vectors, for lexical scoring."""
        result = self.client.table(TABLE).select(RETRIEVAL_COLUMNS).eq(
            "chatbot_id", chatbot_id
        ).order("source_url").order("chunk_index").limit(limit).execute()
        return [KnowledgeChunk.model_validate(row) for row in result.data or []]

    def upsert(self, chunk: KnowledgeChunk) -> None:
        row: Dict[str, Any] = chunk.model_dump(exclude={"id"}, mode="json")
        row["updated_at"] = utc_iso()
        self.client.table(TABLE).upsert(row, on_conflict=SLOT_KEY).execute()

    def update_details(self, chunk_id: str, source_title: Optional[str], metadata: Dict[str, Any]) -> None:
        """Refresh title and metadata of a chunk whose text and vector stay as they are."""
        self.client.table(TABLE).update({
            "source_title": source_title,
            "metadata": metadata,
            "updated_at": utc_iso(),
        }).eq("id", chunk_id).execute()

    def delete_beyond(self, chatbot_id: str, source_type: SourceType, source_url: str, keep: int) -> int:
        """Delete chunks of a source whose ordinal is >= `keep`. Returns rows deleted."""
        result = self.client.table(TABLE).delete().eq(
            "chatbot_id", chatbot_id
        ).eq("source_type", source_type.value).eq(
            "source_url", source_url
        ).gte("chunk_index", keep).execute()
        return len(result.data or [])

    def delete_source(self, chatbot_id: str, source_type: SourceType, source_url: str) -> int:
        return self.delete_beyond(chatbot_id, source_type, source_url, 0)

    def delete_for_chatbot(self, chatbot_id: str) -> int:
        result = self.client.table(TABLE).delete().eq("chatbot_id", chatbot_id).execute()
        return len(result.data or [])

    def has_chunks(self, chatbot_id: str) -> bool:
        result = self.client.table(TABLE).select("id").eq("chatbot_id", chatbot_id).limit(1).execute()
        return bool(result.data)

    def search_similar(
        self,
        chatbot_id: str,
        embedding: List[float],
        threshold: float,
        limit: int,
    ) -> List[Tuple[KnowledgeChunk, float]]:
        """Chunks by cosine similarity to `embedding`, best first."""
        matches = match_or_scan(
            self.client,
            "match_knowledge_chunks",
            {
                "p_chatbot_id": chatbot_id,
                "query_embedding": embedding,
                "match_threshold": threshold,
                "match_count": limit,
            },
            scan=lambda: self._scan(chatbot_id),
            query_embedding=embedding,
            threshold=threshold,
            limit=limit,
        )
        return [(KnowledgeChunk.model_validate(row), similarity) for row, similarity in matches]

    def _scan(self, chatbot_id: str) -> List[Dict[str, Any]]:
        result = self.client.table(TABLE).select("*").eq("chatbot_id", chatbot_id).limit(SCAN_LIMIT).execute()
        return result.data or []
