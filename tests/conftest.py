"""Shared fakes: an in-memory Supabase query builder plus fetcher, embedder and LLM stand-ins."""

import asyncio
import copy
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional

import pytest
from postgrest.exceptions import APIError

from app.features.database import DatabaseClient
from app.features.database.models import utc_iso
from app.features.indexing.fetchers import FetchedContent
from app.shared.errors import AnswerGenerationError, EmbeddingUnavailable, ErrorCode, SourceFetchError


# =============================================================================
# Fake Supabase
# =============================================================================

class FakeResult:
    def __init__(self, data):
        self.data = data


def _sort_key(value):
    return (value is None, value if value is not None else "")


class FakeQuery:
    def __init__(self, store: "FakeSupabase", table: str):
        self.store = store
        self.table = table
        self.op = "select"
        self.payload: Any = None
        self.on_conflict: Optional[str] = None
        self.filters: List = []
        self.orders: List = []
        self.row_limit: Optional[int] = None

    # Operations
    def select(self, *columns):
        self.op = "select"
        return self

    def insert(self, rows):
        self.op, self.payload = "insert", rows
        return self

    def upsert(self, rows, on_conflict=None):
        self.op, self.payload, self.on_conflict = "upsert", rows, on_conflict
        return self

    def update(self, fields):
        self.op, self.payload = "update", fields
        return self

    def delete(self):
        self.op = "delete"
        return self

    # Filters
    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def lte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) <= value)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) >= value)
        return self

    def order(self, column, desc=False):
        self.orders.append((column, desc))
        return self

    def limit(self, count):
        self.row_limit = count
        return self

    def _matching(self) -> List[Dict[str, Any]]:
        return [row for row in self.store.rows(self.table) if all(f(row) for f in self.filters)]

    def execute(self) -> FakeResult:
        # One statement at a time, like a single Postgres statement
        with self.store.lock:
            return self._execute()

    def _execute(self) -> FakeResult:
        if self.op == "insert":
            rows = self.payload if isinstance(self.payload, list) else [self.payload]
            return FakeResult([copy.deepcopy(self.store.add(self.table, row)) for row in rows])

        if self.op == "upsert":
            rows = self.payload if isinstance(self.payload, list) else [self.payload]
            keys = (self.on_conflict or "id").split(",")
            result = []
            for row in rows:
                existing = next(
                    (r for r in self.store.rows(self.table) if all(r.get(k) == row.get(k) for k in keys)),
                    None,
                )
                if existing is not None:
                    existing.update(copy.deepcopy(row))
                    result.append(copy.deepcopy(existing))
                else:
                    result.append(copy.deepcopy(self.store.add(self.table, row)))
            return FakeResult(result)

        matching = self._matching()

        if self.op == "update":
            for row in matching:
                row.update(copy.deepcopy(self.payload))
            return FakeResult(copy.deepcopy(matching))

        if self.op == "delete":
            ids = {id(row) for row in matching}
            self.store.tables[self.table] = [r for r in self.store.rows(self.table) if id(r) not in ids]
            return FakeResult(copy.deepcopy(matching))

        rows = matching
        for column, desc in reversed(self.orders):
            rows = sorted(rows, key=lambda r: _sort_key(r.get(column)), reverse=desc)
        if self.row_limit is not None:
            rows = rows[: self.row_limit]
        return FakeResult(copy.deepcopy(rows))


class FakeRpc:
    def __init__(self, store: "FakeSupabase", name: str, params: Dict[str, Any]):
        self.store = store
        self.name = name
        self.params = params

    def execute(self):
        function = self.store.functions.get(self.name)
        if function is None:
            raise APIError({"message": f"function {self.name} does not exist", "code": "42883"})
        with self.store.lock:
            return FakeResult(function(self.store, self.params))


class FakeSupabase:
    """
    Tables are lists of dicts.

    RPC functions are missing unless registered in `functions`, so
    searches use the local scan by default.
    """

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.functions: Dict[str, Callable[["FakeSupabase", Dict[str, Any]], Any]] = {}
        self.lock = threading.RLock()

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def add(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", utc_iso())
        self.rows(table).append(stored)
        return stored

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Dict[str, Any]) -> FakeRpc:
        return FakeRpc(self, name, params)


# =============================================================================
# Fake providers
# =============================================================================

class FakeEmbedder:
    """Returns configured vectors per text; anything else is 'unavailable'."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default: Optional[List[float]] = None):
        self.vectors = vectors or {}
        self.default = default
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if text in self.vectors:
            return self.vectors[text]
        if self.default is not None:
            return self.default
        raise EmbeddingUnavailable("embedding provider down")


class FakeLLM:
    def __init__(self, answer: str = "We are open 9 to 5.", suggestions: Optional[List[str]] = None, error=None):
        self.answer = answer
        self.suggestions = suggestions if suggestions is not None else ["Are you open on weekends?"]
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, system_prompt, context, history, question, chatbot_id=None):
        self.calls.append({"system": system_prompt, "context": context, "history": history, "question": question})
        if self.error is not None:
            raise self.error
        return self.answer

    async def stream(self, system_prompt, context, history, question, chatbot_id=None):
        self.calls.append({"system": system_prompt, "context": context, "history": history, "question": question})
        if self.error is not None:
            raise self.error
        for word in self.answer.split(" "):
            yield word + " "

    async def suggest_questions(self, question, context, chatbot_id=None):
        return list(self.suggestions)


def llm_timeout() -> AnswerGenerationError:
    return AnswerGenerationError("LLM request timed out", code=ErrorCode.TIMEOUT, user_message="Sorry!")


class FakeFetcher:
    """
    Serves FetchedContent (or raises) per locator.

    A locator listed in `gates` blocks until its asyncio.Event is set.
    """

    def __init__(self, pages: Optional[Dict[str, Any]] = None):
        self.pages = pages or {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.started: List[str] = []

    async def fetch(self, chatbot_id, source_type, locator):
        self.started.append(locator)
        gate = self.gates.get(locator)
        if gate is not None:
            await gate.wait()
        page = self.pages.get(locator)
        if page is None:
            raise SourceFetchError(f"HTTP 404 fetching {locator}", retryable=False)
        if isinstance(page, Exception):
            raise page
        if isinstance(page, str):
            return FetchedContent(text=page, title=locator)
        return page


# =============================================================================
# Fixtures
# =============================================================================

CHATBOT_ID = "bot-1"
OWNER_ID = "user-1"


def chatbot_row(**overrides) -> Dict[str, Any]:
    row = {
        "id": CHATBOT_ID,
        "user_id": OWNER_ID,
        "name": "Acme Support",
        "website_urls": ["https://acme.example/hours", "https://acme.example/pricing"],
        "documents": [],
        "website_content": None,
        "document_content": None,
        "system_prompt": "You are Acme's assistant.",
        "custom_instructions": None,
        "support_phone_number": "+1 555 0100",
        "escalation_message": None,
        "reindex_enabled": False,
        "reindex_mode": "disabled",
    }
    row.update(overrides)
    return row


@pytest.fixture
def supabase():
    return FakeSupabase()


@pytest.fixture
def db(supabase):
    supabase.add("chatbots", chatbot_row())
    supabase.add("users", {"id": OWNER_ID, "email": "owner@acme.example"})
    return DatabaseClient(client=supabase)
