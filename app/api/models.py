from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from app.features.database.models import (
    Chatbot,
    IndexingJob,
    IndexingTask,
    JobStatus,
    ManualOverride,
    ScheduleMode,
    SourceType,
    TaskStatus,
)
from app.features.knowledge.resolver import ResolvedAnswer

# =========================================================================
# CHAT MODELS
# =========================================================================

class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    chatbot_id: str
    message: str = Field(..., min_length=1, max_length=4000)
    history: List[ChatTurn] = Field(default_factory=list)
    conversation_id: Optional[str] = None


class ChatResponse(BaseModel):
    message: str
    source: Optional[str] = None
    should_escalate: bool = False
    suggested_questions: List[str] = Field(default_factory=list)
    similarity: Optional[float] = None
    error_code: Optional[str] = None  # Set only when the visitor got a fallback message

    @classmethod
    def from_answer(cls, answer: ResolvedAnswer) -> "ChatResponse":
        return cls(
            message=answer.message,
            source=answer.source.value,
            should_escalate=answer.should_escalate,
            suggested_questions=answer.suggested_questions,
            similarity=answer.similarity,
        )

# =========================================================================
# INDEXING MODELS
# =========================================================================

class SourceSpec(BaseModel):
    type: SourceType
    locator: str = Field(..., min_length=1, description="Website URL or document name")


class CreateJobRequest(BaseModel):
    # None reindexes every source configured on the chatbot
    sources: Optional[List[SourceSpec]] = None


class JobResponse(BaseModel):
    id: str
    chatbot_id: str
    status: JobStatus
    progress: int
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    error_message: Optional[str] = None
    retry_of_job_id: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: IndexingJob) -> "JobResponse":
        return cls(progress=job.progress, **job.model_dump())


class TaskResponse(BaseModel):
    id: str
    source_type: SourceType
    source_url: str
    status: TaskStatus
    chunks_created: int
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_task(cls, task: IndexingTask) -> "TaskResponse":
        return cls(**task.model_dump(include=set(cls.model_fields)))

# =========================================================================
# KNOWLEDGE MODELS
# =========================================================================

class OverrideCreateRequest(BaseModel):
    question: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)
    original_answer: Optional[str] = None
    conversation_id: Optional[str] = None
    created_by: Optional[str] = None


class OverrideUpdateRequest(BaseModel):
    question: Optional[str] = None
    answer: Optional[str] = None


class OverrideResponse(BaseModel):
    id: str
    chatbot_id: str
    question: str
    manual_answer: str
    original_answer: Optional[str] = None
    conversation_id: Optional[str] = None
    use_count: int = 0
    has_embedding: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_override(cls, override: ManualOverride) -> "OverrideResponse":
        fields = override.model_dump(exclude={"embedding", "question_hash", "created_by"})
        return cls(has_embedding=override.embedding is not None, **fields)

# =========================================================================
# SCHEDULE MODELS
# =========================================================================

class ScheduleRequest(BaseModel):
    enabled: bool = True
    mode: ScheduleMode
    time: str = Field("03:00", description="HH:MM in the schedule's timezone")
    timezone: str = "America/New_York"
    days: List[str] = Field(default_factory=list, description="Weekday names for weekly schedules")
    once_date: Optional[str] = Field(None, description="YYYY-MM-DD for one-time schedules")


class ScheduleResponse(BaseModel):
    chatbot_id: str
    enabled: bool
    mode: ScheduleMode
    time: str
    timezone: str
    days: List[str]
    once_date: Optional[str] = None
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None

    @classmethod
    def from_chatbot(cls, chatbot: Chatbot) -> "ScheduleResponse":
        return cls(
            chatbot_id=chatbot.id,
            enabled=chatbot.reindex_enabled,
            mode=chatbot.reindex_mode,
            time=chatbot.reindex_time,
            timezone=chatbot.reindex_timezone,
            days=chatbot.reindex_days,
            once_date=chatbot.reindex_once_date,
            next_run_at=chatbot.reindex_next_run_at,
            last_run_at=chatbot.reindex_last_run_at,
            last_status=chatbot.reindex_last_status.value if chatbot.reindex_last_status else None,
            last_error=chatbot.reindex_last_error,
        )
