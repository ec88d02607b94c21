"""
Typed rows of the Knowledge Store.

Repositories return these instead of raw dicts so status values and
vectors are validated once, at the store boundary.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.features.knowledge.embedding import parse_embedding


class SourceType(str, Enum):
    WEBSITE = "website"
    DOCUMENT = "document"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({
    JobStatus.COMPLETED, JobStatus.PARTIAL, JobStatus.FAILED, JobStatus.CANCELLED,
})


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ScheduleMode(str, Enum):
    DISABLED = "disabled"
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"


class ReindexRunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class _EmbeddingRow(BaseModel):
    embedding: Optional[List[float]] = None

    @field_validator("embedding", mode="before")
    @classmethod
    def _parse_embedding(cls, value):
        return parse_embedding(value)


class Chatbot(BaseModel):
    id: str
    user_id: Optional[str] = None
    name: Optional[str] = None
    website_urls: List[str] = Field(default_factory=list)
    website_content: Optional[str] = None
    documents: List[str] = Field(default_factory=list)
    document_content: Optional[str] = None
    system_prompt: Optional[str] = None
    custom_instructions: Optional[str] = None
    support_phone_number: Optional[str] = None
    escalation_message: Optional[str] = None
    indexing_status: Optional[str] = None
    last_indexing_job_id: Optional[str] = None

    # Reindex schedule
    reindex_enabled: bool = False
    reindex_mode: ScheduleMode = ScheduleMode.DISABLED
    reindex_time: str = "03:00"
    reindex_timezone: str = "America/New_York"
    reindex_days: List[str] = Field(default_factory=lambda: ["monday"])
    reindex_once_date: Optional[str] = None
    reindex_next_run_at: Optional[datetime] = None
    reindex_last_run_at: Optional[datetime] = None
    reindex_last_status: Optional[ReindexRunStatus] = None
    reindex_last_error: Optional[str] = None
    # Job started by the latest scheduled run; manual reindexes do not touch it
    reindex_job_id: Optional[str] = None

    @field_validator("website_urls", "documents", "reindex_days", mode="before")
    @classmethod
    def _none_to_list(cls, value):
        return value if value is not None else []

    @field_validator("reindex_mode", mode="before")
    @classmethod
    def _none_to_disabled(cls, value):
        return value or ScheduleMode.DISABLED

    @field_validator("reindex_enabled", mode="before")
    @classmethod
    def _none_to_false(cls, value):
        return bool(value)

    @field_validator("reindex_time", "reindex_timezone", mode="before")
    @classmethod
    def _none_to_default(cls, value, info):
        if value:
            return value
        return "03:00" if info.field_name == "reindex_time" else "America/New_York"

    @property
    def has_knowledge(self) -> bool:
        """Anything configured that could produce knowledge context."""
        return bool(
            self.website_urls
            or self.documents
            or (self.website_content or "").strip()
            or (self.document_content or "").strip()
        )


class KnowledgeChunk(_EmbeddingRow):
    id: Optional[str] = None
    chatbot_id: str
    source_type: SourceType
    source_url: str
    source_title: Optional[str] = None
    chunk_index: int
    chunk_text: str
    content_hash: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_to_dict(cls, value):
        return value or {}


class CacheEntry(_EmbeddingRow):
    id: str
    chatbot_id: str
    question: str
    question_hash: str
    answer: str
    suggested_questions: List[str] = Field(default_factory=list)
    hit_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("suggested_questions", mode="before")
    @classmethod
    def _none_to_list(cls, value):
        return value or []


class ManualOverride(_EmbeddingRow):
    id: str
    chatbot_id: str
    question: str
    question_hash: str
    manual_answer: str
    original_answer: Optional[str] = None
    conversation_id: Optional[str] = None
    created_by: Optional[str] = None
    use_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class IndexingJob(BaseModel):
    id: str
    chatbot_id: str
    status: JobStatus
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    error_message: Optional[str] = None
    retry_of_job_id: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def progress(self) -> int:
        """Finished tasks as an integer percentage."""
        if self.total_tasks <= 0:
            return 100 if self.status.is_terminal else 0
        finished = min(self.completed_tasks + self.failed_tasks, self.total_tasks)
        return round(finished / self.total_tasks * 100)


class IndexingTask(BaseModel):
    id: str
    job_id: str
    chatbot_id: str
    source_type: SourceType
    source_url: str
    status: TaskStatus
    chunks_created: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


def utc_iso(moment: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp as stored in timestamptz columns."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()
