"""
Setup Knowledge Store tables and similarity-search functions.

Idempotent; safe to run on every deploy. The connection string comes from
DATABASE_URL (Supabase: Project Settings > Database > Connection string).

    DATABASE_URL=postgresql://... python scripts/setup_db_functions.py
"""
import os
import sys

import psycopg2
from dotenv import load_dotenv

load_dotenv()

EMBEDDING_DIMENSIONS = int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))

SCHEMA = f"""
CREATE EXTENSION IF NOT EXISTS vector;

CREATE TABLE IF NOT EXISTS knowledge_chunks (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    chatbot_id UUID NOT NULL REFERENCES chatbots(id) ON DELETE CASCADE,
    source_type TEXT NOT NULL CHECK (source_type IN ('website', 'document')),
    source_url TEXT NOT NULL,
    source_title TEXT,
    chunk_index INTEGER NOT NULL,
    chunk_text TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    embedding vector({EMBEDDING_DIMENSIONS}),
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (chatbot_id, source_type, source_url, chunk_index)
);

CREATE TABLE IF NOT EXISTS qa_cache (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    chatbot_id UUID NOT NULL REFERENCES chatbots(id) ON DELETE CASCADE,
    question TEXT NOT NULL,
    question_hash TEXT NOT NULL,
    answer TEXT NOT NULL,
    embedding vector({EMBEDDING_DIMENSIONS}),
    suggested_questions JSONB NOT NULL DEFAULT '[]'::jsonb,
    hit_count INTEGER NOT NULL DEFAULT 0,
    last_used_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (chatbot_id, question_hash)
);

CREATE TABLE IF NOT EXISTS manual_qa_overrides (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    chatbot_id UUID NOT NULL REFERENCES chatbots(id) ON DELETE CASCADE,
    question TEXT NOT NULL,
    question_hash TEXT NOT NULL,
    manual_answer TEXT NOT NULL,
    original_answer TEXT,
    conversation_id UUID,
    created_by UUID,
    embedding vector({EMBEDDING_DIMENSIONS}),
    use_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS manual_qa_overrides_hash_idx ON manual_qa_overrides (chatbot_id, question_hash);

CREATE TABLE IF NOT EXISTS indexing_jobs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    chatbot_id UUID NOT NULL REFERENCES chatbots(id) ON DELETE CASCADE,
    status TEXT NOT NULL CHECK (status IN ('pending', 'processing', 'completed', 'partial', 'failed', 'cancelled')),
    total_tasks INTEGER NOT NULL DEFAULT 0,
    completed_tasks INTEGER NOT NULL DEFAULT 0,
    failed_tasks INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    retry_of_job_id UUID REFERENCES indexing_jobs(id),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    cancelled_at TIMESTAMPTZ,
    CHECK (completed_tasks + failed_tasks <= total_tasks)
);
CREATE INDEX IF NOT EXISTS indexing_jobs_pending_idx ON indexing_jobs (status, created_at);

CREATE TABLE IF NOT EXISTS indexing_tasks (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    job_id UUID NOT NULL REFERENCES indexing_jobs(id) ON DELETE CASCADE,
    chatbot_id UUID NOT NULL,
    source_type TEXT NOT NULL,
    source_url TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    chunks_created INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS admin_notifications (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    chatbot_id UUID,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    read BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

ALTER TABLE chatbots
    ADD COLUMN IF NOT EXISTS indexing_status TEXT,
    ADD COLUMN IF NOT EXISTS last_indexing_job_id UUID,
    ADD COLUMN IF NOT EXISTS reindex_enabled BOOLEAN NOT NULL DEFAULT false,
    ADD COLUMN IF NOT EXISTS reindex_mode TEXT NOT NULL DEFAULT 'disabled',
    ADD COLUMN IF NOT EXISTS reindex_time TEXT NOT NULL DEFAULT '03:00',
    ADD COLUMN IF NOT EXISTS reindex_timezone TEXT NOT NULL DEFAULT 'America/New_York',
    ADD COLUMN IF NOT EXISTS reindex_days JSONB NOT NULL DEFAULT '["monday"]'::jsonb,
    ADD COLUMN IF NOT EXISTS reindex_once_date TEXT,
    ADD COLUMN IF NOT EXISTS reindex_next_run_at TIMESTAMPTZ,
    ADD COLUMN IF NOT EXISTS reindex_last_run_at TIMESTAMPTZ,
    ADD COLUMN IF NOT EXISTS reindex_last_status TEXT,
    ADD COLUMN IF NOT EXISTS reindex_last_error TEXT,
    ADD COLUMN IF NOT EXISTS reindex_job_id UUID;
"""

# Each match function: rows of one chatbot with similarity >= threshold, best first, newest first on ties
MATCH_FUNCTIONS = f"""
CREATE OR REPLACE FUNCTION match_knowledge_chunks(
    p_chatbot_id UUID,
    query_embedding vector({EMBEDDING_DIMENSIONS}),
    match_threshold FLOAT DEFAULT 0.3,
    match_count INT DEFAULT 8
)
RETURNS TABLE (
    id UUID, chatbot_id UUID, source_type TEXT, source_url TEXT, source_title TEXT,
    chunk_index INTEGER, chunk_text TEXT, content_hash TEXT, metadata JSONB,
    created_at TIMESTAMPTZ, similarity FLOAT
) AS $$
    SELECT c.id, c.chatbot_id, c.source_type, c.source_url, c.source_title,
           c.chunk_index, c.chunk_text, c.content_hash, c.metadata, c.created_at,
           1 - (c.embedding <=> query_embedding) AS similarity
    FROM knowledge_chunks c
    WHERE c.chatbot_id = p_chatbot_id
      AND c.embedding IS NOT NULL
      AND 1 - (c.embedding <=> query_embedding) >= match_threshold
    ORDER BY c.embedding <=> query_embedding, c.created_at DESC
    LIMIT match_count;
$$ LANGUAGE sql STABLE;

CREATE OR REPLACE FUNCTION match_qa_cache(
    p_chatbot_id UUID,
    query_embedding vector({EMBEDDING_DIMENSIONS}),
    match_threshold FLOAT DEFAULT 0.85,
    match_count INT DEFAULT 1
)
RETURNS TABLE (
    id UUID, chatbot_id UUID, question TEXT, question_hash TEXT, answer TEXT,
    suggested_questions JSONB, hit_count INTEGER, last_used_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ, similarity FLOAT
) AS $$
    SELECT q.id, q.chatbot_id, q.question, q.question_hash, q.answer,
           q.suggested_questions, q.hit_count, q.last_used_at, q.created_at,
           1 - (q.embedding <=> query_embedding) AS similarity
    FROM qa_cache q
    WHERE q.chatbot_id = p_chatbot_id
      AND q.embedding IS NOT NULL
      AND 1 - (q.embedding <=> query_embedding) >= match_threshold
    ORDER BY q.embedding <=> query_embedding, q.created_at DESC
    LIMIT match_count;
$$ LANGUAGE sql STABLE;

CREATE OR REPLACE FUNCTION match_qa_overrides(
    p_chatbot_id UUID,
    query_embedding vector({EMBEDDING_DIMENSIONS}),
    match_threshold FLOAT DEFAULT 0.85,
    match_count INT DEFAULT 1
)
RETURNS TABLE (
    id UUID, chatbot_id UUID, question TEXT, question_hash TEXT, manual_answer TEXT,
    original_answer TEXT, conversation_id UUID, use_count INTEGER,
    created_at TIMESTAMPTZ, updated_at TIMESTAMPTZ, similarity FLOAT
) AS $$
    SELECT o.id, o.chatbot_id, o.question, o.question_hash, o.manual_answer,
           o.original_answer, o.conversation_id, o.use_count, o.created_at, o.updated_at,
           1 - (o.embedding <=> query_embedding) AS similarity
    FROM manual_qa_overrides o
    WHERE o.chatbot_id = p_chatbot_id
      AND o.embedding IS NOT NULL
      AND 1 - (o.embedding <=> query_embedding) >= match_threshold
    ORDER BY o.embedding <=> query_embedding, o.created_at DESC
    LIMIT match_count;
$$ LANGUAGE sql STABLE;

-- Atomic usage counters; concurrent hits on one row never lose an increment
CREATE OR REPLACE FUNCTION increment_qa_cache_hit(p_id UUID)
RETURNS void AS $$
    UPDATE qa_cache SET hit_count = hit_count + 1, last_used_at = now() WHERE id = p_id;
$$ LANGUAGE sql VOLATILE;

CREATE OR REPLACE FUNCTION increment_override_use(p_id UUID)
RETURNS void AS $$
    UPDATE manual_qa_overrides SET use_count = use_count + 1 WHERE id = p_id;
$$ LANGUAGE sql VOLATILE;
"""


def main() -> int:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("❌ DATABASE_URL is not set")
        return 1

    conn = psycopg2.connect(database_url)
    try:
        cur = conn.cursor()

        print("Creating knowledge tables...")
        cur.execute(SCHEMA)
        conn.commit()
        print("✅ Tables ready")

        print("Creating similarity search and counter functions...")
        cur.execute(MATCH_FUNCTIONS)
        conn.commit()
        print("✅ match_* and increment_* functions created")

        cur.execute("SELECT status, count(*) FROM indexing_jobs GROUP BY status ORDER BY status")
        rows = cur.fetchall()
        if rows:
            print("\n📊 Indexing jobs by status:")
            for status, count in rows:
                print(f"  - {status}: {count}")
    finally:
        conn.close()

    print("\n✅ Database setup complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
