"""
Knowledge Store access layer.

Usage:
    from app.features.database import get_database_client

    db = get_database_client()
    job = db.jobs.get(job_id)
    matches = db.qa_cache.search_similar(chatbot_id, embedding, threshold=0.85)
"""

from app.features.database.client import DatabaseClient, get_database_client

__all__ = [
    "DatabaseClient",
    "get_database_client",
]
