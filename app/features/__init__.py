"""
Features Module - Self-contained feature units.

Each feature is a modular unit with its own logic:
- database: Knowledge Store repositories
- knowledge: chunking, embeddings, retrieval and answer resolution
- indexing: source fetchers, job orchestration and the worker loop
- scheduling: recurring reindex schedules
- notifications: owner notifications for failed reindexes
"""
