"""Knowledge base loader and document index builder.

Loads the static question/answer corpus and flattens it into the fixed list of
documents that get embedded: one per question name and one per token window
of each question's context.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from cv_rag.knowledge.errors import KnowledgeBaseLoadError
from cv_rag.knowledge.models import Document, KnowledgeEntry

logger = logging.getLogger(__name__)

# Default chunk configuration
DEFAULT_CHUNK_TOKENS = 500  # whitespace-delimited tokens
DEFAULT_CHUNK_OVERLAP_TOKENS = 50

_TOKEN_PATTERN = re.compile(r"\S+")
_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def load_knowledge_entries(path: Path) -> list[KnowledgeEntry]:
    """Load knowledge entries from a JSON file.

    Accepts either ``{"questions": [...]}`` or a bare list of entries.

    Args:
        path: Path to the knowledge base JSON file.

    Returns:
        List of KnowledgeEntry objects, in file order.

    Raises:
        KnowledgeBaseLoadError: If the file is missing, not valid JSON, or
            does not contain a list of entries.
    """
    if not path.exists():
        raise KnowledgeBaseLoadError(f"Knowledge base not found at {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise KnowledgeBaseLoadError(f"Failed to read knowledge base {path}: {e}") from e

    return parse_knowledge_entries(data)


def parse_knowledge_entries(data: Any) -> list[KnowledgeEntry]:
    """Validate raw knowledge base data into KnowledgeEntry objects."""
    raw_entries = data.get("questions") if isinstance(data, dict) else data
    if not isinstance(raw_entries, list):
        raise KnowledgeBaseLoadError("Knowledge base must contain a list of questions")

    entries: list[KnowledgeEntry] = []
    for index, raw in enumerate(raw_entries):
        try:
            entries.append(KnowledgeEntry.model_validate(raw))
        except ValidationError as e:
            raise KnowledgeBaseLoadError(f"Invalid knowledge entry at index {index}: {e}") from e

    logger.info(f"Loaded {len(entries)} knowledge entries")
    return entries


def chunk_text(
    text: str,
    chunk_tokens: int = DEFAULT_CHUNK_TOKENS,
    overlap_tokens: int = DEFAULT_CHUNK_OVERLAP_TOKENS,
) -> list[str]:
    """Split text into overlapping windows of whitespace-delimited tokens.

    Each chunk is the original text sliced from the first token of the window
    up to the first token after it, so inner whitespace is preserved. The
    window slides by ``chunk_tokens - overlap_tokens`` tokens.

    Args:
        text: Text to split.
        chunk_tokens: Maximum tokens per chunk (at least 1).
        overlap_tokens: Tokens shared by consecutive chunks, clamped below
            ``chunk_tokens``.

    Returns:
        List of trimmed chunks. Text without any token yields its trimmed
        self when non-empty, otherwise nothing.
    """
    if not text:
        return []

    window = max(1, int(chunk_tokens))
    overlap = max(0, min(int(overlap_tokens), window - 1))
    tokens = [(m.start(), m.end()) for m in _TOKEN_PATTERN.finditer(text)]

    if not tokens:
        trimmed = text.strip()
        return [trimmed] if trimmed else []

    chunks: list[str] = []
    start = 0
    while start < len(tokens):
        end = min(len(tokens), start + window)
        chunk_start = tokens[start][0]
        chunk_end = tokens[end][0] if end < len(tokens) else len(text)
        chunk = text[chunk_start:chunk_end].strip()
        if chunk:
            chunks.append(chunk)
        if end == len(tokens):
            break
        next_start = end - overlap
        start = end if next_start <= start else next_start

    return chunks


def normalize_question_text(text: str) -> str:
    """Trim and lowercase question text for matching."""
    if not text:
        return ""
    return text.strip().lower()


def slugify_question_text(text: str) -> str:
    """Slugify normalized question text (non-alphanumeric runs become '-')."""
    return _SLUG_PATTERN.sub("-", normalize_question_text(text)).strip("-")


def build_question_id(entry: KnowledgeEntry, index: int) -> str:
    """Build the stable question id shared by all documents of an entry."""
    slug = slugify_question_text(entry.name) or f"question-{index}"
    return f"question:{slug}"


def build_documents(
    entries: Iterable[KnowledgeEntry],
    chunk_tokens: int = DEFAULT_CHUNK_TOKENS,
    overlap_tokens: int = DEFAULT_CHUNK_OVERLAP_TOKENS,
) -> list[Document]:
    """Flatten knowledge entries into embeddable documents.

    Args:
        entries: Knowledge entries in a stable order.
        chunk_tokens: Maximum tokens per context chunk.
        overlap_tokens: Overlap between consecutive context chunks.

    Returns:
        Documents with ids ``<question_id>:name`` and
        ``<question_id>:context:<chunk_index>``.
    """
    documents: list[Document] = []

    for index, entry in enumerate(entries):
        question_id = build_question_id(entry, index)
        name_text = (entry.name or "").strip()
        context_text = (entry.context or "").strip()
        if not name_text and not context_text:
            continue

        question_name = name_text or "Question"

        if name_text:
            documents.append(
                Document(
                    id=f"{question_id}:name",
                    question_id=question_id,
                    type="name",
                    text=name_text,
                    question_name=question_name,
                    context=context_text or name_text,
                )
            )

        if context_text:
            for chunk_index, chunk in enumerate(
                chunk_text(context_text, chunk_tokens, overlap_tokens)
            ):
                documents.append(
                    Document(
                        id=f"{question_id}:context:{chunk_index}",
                        question_id=question_id,
                        type="context",
                        text=chunk,
                        question_name=question_name,
                        context=context_text,
                        chunk_index=chunk_index,
                    )
                )

    logger.debug(f"Built {len(documents)} documents")
    return documents


def load_cv_data(path: Path | None) -> Any:
    """Load the optional whole-CV JSON document, or None when unset/missing.

    Raises:
        KnowledgeBaseLoadError: If the file exists but cannot be read or parsed.
    """
    if path is None or not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise KnowledgeBaseLoadError(f"Failed to read CV data {path}: {e}") from e
