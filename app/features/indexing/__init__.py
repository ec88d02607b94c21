"""Indexing jobs: fetching sources, chunking, embedding and storing them."""

from app.features.indexing.orchestrator import IndexingOrchestrator, resolve_job_status, sources_for_chatbot
from app.features.indexing.worker import IndexingWorker

__all__ = ["IndexingOrchestrator", "IndexingWorker", "resolve_job_status", "sources_for_chatbot"]
