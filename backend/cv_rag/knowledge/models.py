"""Data models for knowledge base entries, documents and retrieval results."""

import hashlib
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

DocumentType = Literal["name", "context"]


def hash_text(value: str) -> str:
    """Return the SHA-256 hex digest of a string."""
    return hashlib.sha256((value or "").encode("utf-8")).hexdigest()


class KnowledgeEntry(BaseModel):
    """One static question/answer unit of the knowledge base."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="", description="Question text (may be empty)")
    context: str = Field(default="", description="Supporting evidence for the answer")
    verbatim: bool = Field(
        default=False,
        description="Exact matches must be returned as-is, never sent to the model",
    )


class Document(BaseModel):
    """A retrievable, independently embeddable unit of a knowledge entry.

    Either the literal question text (``type="name"``) or one chunk of the
    entry's context (``type="context"``). ``context`` always holds the full,
    unchunked context so downstream consumers get complete evidence.
    """

    id: str = Field(..., description="Stable id, e.g. 'question:what-do-you-do:context:0'")
    question_id: str = Field(..., description="Shared by all documents of one entry")
    type: DocumentType
    text: str = Field(..., description="Exact string that gets embedded")
    question_name: str
    context: str
    chunk_index: Optional[int] = None
    embedding: Optional[list[float]] = None
    content_hash: str = ""

    @model_validator(mode="after")
    def _hash_text(self) -> "Document":
        self.content_hash = hash_text(self.text)
        return self


class RetrievalResult(BaseModel):
    """A knowledge entry matched by retrieval, with its relevance score."""

    question_id: str
    question_name: str
    context: str = Field(..., description="Full context of the matched entry")
    score: float = Field(..., ge=-1.0, le=1.0, description="Cosine similarity")
    matched_on: Literal["name", "context", "exact-match"]


class ExpansionReason(str, Enum):
    """Why the second, context-enriched retrieval pass was triggered."""

    SHORT_MESSAGE = "short-message"
    LOW_SIGNAL_TOKEN = "low-signal-token"
    NO_RESULTS = "no-results"
    WEAK_TOP_SCORE = "weak-top-score"


class ExpansionDecision(BaseModel):
    triggered: bool
    reason: Optional[ExpansionReason] = None


class ExpansionMetadata(BaseModel):
    """Observability record for a two-pass retrieval."""

    triggered: bool
    reason: str
    used_pass2: bool
    pass1_count: int
    pass2_count: int
    pass1_top_score: float
    pass2_top_score: float
    total_latency_ms: float


class RetrievalResultSet(BaseModel):
    """Ranked results plus optional expansion metadata (never persisted)."""

    results: list[RetrievalResult] = Field(default_factory=list)
    expansion: Optional[ExpansionMetadata] = None

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, index: int) -> RetrievalResult:
        return self.results[index]

    @property
    def top_score(self) -> float:
        return self.results[0].score if self.results else 0.0

    @property
    def question_names(self) -> list[str]:
        return [result.question_name for result in self.results]


class ExactMatch(BaseModel):
    question: str
    context: str
    verbatim: bool = False


class CachedEmbedding(BaseModel):
    """Cache payload: an embedding and the hash of the text it was computed from."""

    content_hash: str
    embedding: list[float]


class DocumentStatus(BaseModel):
    id: str
    question_id: str
    type: DocumentType
    has_embedding: bool
    embedding_length: int


class EmbeddingStatus(BaseModel):
    """Index health report returned by the re-indexing entry points."""

    total: int
    cached: int
    missing: int
    documents: list[DocumentStatus] = Field(default_factory=list)


class PreviousContext(BaseModel):
    """Prior conversational turn used to enrich follow-up queries."""

    previous_user_message: str = ""
    previous_assistant_summary: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.previous_user_message and not self.previous_assistant_summary


class ContextSelection(BaseModel):
    """What the chat handler may use to answer one question."""

    answer: Optional[str] = Field(
        default=None,
        description="Final user-facing answer for verbatim exact matches",
    )
    verbatim: bool = False
    exact_match: bool = False
    results: RetrievalResultSet = Field(default_factory=RetrievalResultSet)
    context: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
