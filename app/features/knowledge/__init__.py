"""
Knowledge feature: chunking, embeddings, retrieval and answer resolution.

Import from the submodules directly (`app.features.knowledge.resolver`,
`app.features.knowledge.chunker`, ...); this package keeps no re-exports
so the store models can depend on the embedding helpers.
"""
