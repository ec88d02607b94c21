"""
Similarity search over pgvector columns.

Each searchable table has a Postgres function (`match_knowledge_chunks`,
`match_qa_cache`, `match_qa_overrides`). When the function is missing
(fresh project, setup script not run yet) the rows of the chatbot are
scanned in-process with numpy instead.
"""

import logging
from typing import Any, Callable, Dict, List, Tuple

import numpy as np
from postgrest.exceptions import APIError

from app.features.knowledge.embedding import parse_embedding

logger = logging.getLogger("Chatbot.Database.VectorSearch")

SCAN_LIMIT = 2000


def rank_rows(
    rows: List[Dict[str, Any]],
    query_embedding: List[float],
    threshold: float,
    limit: int,
) -> List[Dict[str, Any]]:
    """
    Rows whose embedding scores at least `threshold`, best first.

    Ties go to the most recently created row. Rows without a vector or
    with a different dimension are skipped.
    """
    query_vec = np.asarray(query_embedding, dtype=float)
    query_norm = np.linalg.norm(query_vec)
    if query_norm == 0:
        return []

    matches = []
    for row in rows:
        vector = parse_embedding(row.get("embedding"))
        if not vector or len(vector) != len(query_vec):
            continue
        row_vec = np.asarray(vector, dtype=float)
        norm = query_norm * np.linalg.norm(row_vec)
        if norm == 0:
            continue
        similarity = float(np.dot(query_vec, row_vec) / norm)
        if similarity >= threshold:
            matches.append({**row, "similarity": similarity})

    return sort_matches(matches)[:limit]


def sort_matches(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # Two stable sorts: newest first, then by similarity
    by_recency = sorted(rows, key=lambda r: str(r.get("created_at") or ""), reverse=True)
    return sorted(by_recency, key=lambda r: r["similarity"], reverse=True)


def match_or_scan(
    client,
    function_name: str,
    params: Dict[str, Any],
    scan: Callable[[], List[Dict[str, Any]]],
    query_embedding: List[float],
    threshold: float,
    limit: int,
) -> List[Tuple[Dict[str, Any], float]]:
    """
    Run the RPC match function, falling back to a local scan.

    Returns:
        List of (row, similarity), best first
    """
    try:
        result = client.rpc(function_name, params).execute()
        rows = sort_matches([r for r in (result.data or []) if r.get("similarity") is not None])
    except APIError as e:
        logger.warning(f"RPC {function_name} failed, falling back to local scan: {e.message}")
        rows = rank_rows(scan(), query_embedding, threshold, limit)

    return [(row, float(row["similarity"])) for row in rows[:limit] if row["similarity"] >= threshold]
