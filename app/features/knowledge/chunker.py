"""
Chunking of crawled pages and uploaded documents.

Chunks are the unit of retrieval and of change detection:
1. Every chunk stays at or under `max_size` characters
2. Breaks prefer paragraph, then sentence, then word boundaries
3. Each chunk carries an MD5 of its exact text, so re-indexing unchanged
   content produces identical hashes and can be skipped

Output format (one dict per chunk, ordered):
    {"content": str, "content_hash": str, "chunk_index": int, "metadata": dict}
"""

import hashlib
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from app.core.config import settings

logger = logging.getLogger("Chatbot.Knowledge.Chunker")

MAX_KEYWORDS = 20

FORM_INDICATORS = (
    "confirm password",
    "i accept the terms of use",
    "privacy policy",
    "required fields",
    "submit",
)

STOPWORDS = frozenset("""
a about above after again against all also am an and any are as at be because been before being
below between both but by can could did do does doing down during each few for from further had
has have having he her here hers him his how i if in into is it its itself just me more most my
no nor not now of off on once only or other our ours out over own same she should so some such
than that the their theirs them then there these they this those through to too under until up
very was we were what when where which while who whom why will with would you your yours
""".split())

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n+")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_INLINE_SPACE = re.compile(r"[ \t\f\v]+")

_HEADING = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)
_CAPITALIZED = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")
_ACRONYM = re.compile(r"\b[A-Z]{2,}[0-9]*\b")
_QUOTED = re.compile(r"[\"“]([^\"“”]{3,50})[\"”]")
_HYPHENATED = re.compile(r"\b[A-Za-z]+(?:-[A-Za-z]+)+\b")
_WORD = re.compile(r"[a-z0-9]+(?:'[a-z]+)?")


def content_hash(text: str) -> str:
    """MD5 hex digest of the exact chunk text."""
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def chunk_text(
    text: str,
    base_metadata: Optional[Dict[str, Any]] = None,
    max_size: Optional[int] = None,
    min_size: Optional[int] = None,
    overlap: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Split `text` into ordered chunks.

    Whitespace-only input gives an empty list. Input shorter than
    `min_size` gives a single chunk.
    """
    max_size = max_size or settings.CHUNK_MAX_SIZE
    min_size = settings.CHUNK_MIN_SIZE if min_size is None else min_size
    overlap = settings.CHUNK_OVERLAP if overlap is None else overlap

    normalized = _normalize(text)
    if not normalized:
        return []

    pieces = _assemble(_split_units(normalized, max_size), max_size, min_size, overlap)

    if len(pieces) > 1:
        kept = [piece for piece in pieces if not is_low_quality(piece)]
        dropped = len(pieces) - len(kept)
        if dropped:
            logger.debug(f"Dropped {dropped} low-quality chunks")
        pieces = kept

    chunks = []
    for index, piece in enumerate(pieces):
        metadata = dict(base_metadata or {})
        headings = extract_headings(piece)
        if headings:
            metadata["headings"] = headings
        keywords = extract_keywords(piece)
        if keywords:
            metadata["keywords"] = keywords
        chunks.append({
            "content": piece,
            "content_hash": content_hash(piece),
            "chunk_index": index,
            "metadata": metadata,
        })
    return chunks


def chunk_website_content(url: str, text: str, title: Optional[str] = None) -> List[Dict[str, Any]]:
    metadata = {"url": url}
    if title:
        metadata["title"] = title
    chunks = chunk_text(text, metadata)
    logger.info(f"Chunked page {url} into {len(chunks)} chunks")
    return chunks


def chunk_document_content(name: str, text: str) -> List[Dict[str, Any]]:
    chunks = chunk_text(text, {"title": name, "document": name})
    logger.info(f"Chunked document {name} into {len(chunks)} chunks")
    return chunks


# =============================================================================
# SPLITTING
# =============================================================================

def _normalize(text: Optional[str]) -> str:
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_INLINE_SPACE.sub(" ", line).strip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def _split_units(text: str, max_size: int) -> List[Tuple[str, str]]:
    """
    Break text into (separator, unit) pairs, each unit at most `max_size`.

    The separator is what joins the unit to the text before it: a blank
    line between paragraphs, a space inside a split paragraph.
    """
    units: List[Tuple[str, str]] = []
    for paragraph in _PARAGRAPH_SPLIT.split(text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if len(paragraph) <= max_size:
            units.append(("\n\n", paragraph))
            continue

        first = True
        for sentence in _SENTENCE_SPLIT.split(paragraph):
            for piece in _split_sentence(sentence.strip(), max_size):
                units.append(("\n\n" if first else " ", piece))
                first = False
    return units


def _split_sentence(sentence: str, max_size: int) -> List[str]:
    if len(sentence) <= max_size:
        return [sentence] if sentence else []

    pieces: List[str] = []
    current = ""
    for word in sentence.split():
        # A single word longer than the limit is cut mid-word
        while len(word) > max_size:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(word[:max_size])
            word = word[max_size:]
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_size:
            current = candidate
        else:
            pieces.append(current)
            current = word
    if current:
        pieces.append(current)
    return pieces


def _overlap_tail(text: str, overlap: int) -> str:
    """Last `overlap` characters of `text`, starting at a word boundary."""
    if overlap <= 0 or len(text) <= overlap:
        return ""
    tail = text[-overlap:]
    if not text[-overlap - 1].isspace():
        space = tail.find(" ")
        if space == -1:
            return ""
        tail = tail[space + 1:]
    return tail.strip()


def _assemble(units: List[Tuple[str, str]], max_size: int, min_size: int, overlap: int) -> List[str]:
    # Each entry: (chunk text, length of the overlap prefix it starts with)
    chunks: List[Tuple[str, int]] = []
    current = ""
    current_prefix = 0

    for separator, unit in units:
        if not current:
            current, current_prefix = unit, 0
            continue

        candidate = current + separator + unit
        if len(candidate) <= max_size:
            current = candidate
            continue

        chunks.append((current, current_prefix))
        tail = _overlap_tail(current, overlap)
        if tail and len(tail) + 1 + len(unit) <= max_size:
            current, current_prefix = f"{tail} {unit}", len(tail) + 1
        else:
            current, current_prefix = unit, 0

    if current:
        chunks.append((current, current_prefix))

    # Fold a too-small final chunk into its predecessor when the result still fits
    if len(chunks) > 1 and len(chunks[-1][0]) < min_size:
        last_text, last_prefix = chunks[-1]
        body = last_text[last_prefix:]
        prev_text, prev_prefix = chunks[-2]
        merged = f"{prev_text}\n\n{body}"
        if len(merged) <= max_size:
            chunks[-2:] = [(merged, prev_prefix)]

    return [text for text, _ in chunks]


# =============================================================================
# QUALITY AND METADATA
# =============================================================================

def is_low_quality(text: str) -> bool:
    """Form boilerplate or highly repetitive text."""
    lowered = text.lower()
    if len(text) < 2000:
        indicators = sum(1 for phrase in FORM_INDICATORS if phrase in lowered)
        if indicators >= 3:
            return True

    words = _WORD.findall(lowered)
    if len(words) > 10 and len(set(words)) / len(words) < 0.3:
        return True
    return False


def extract_headings(text: str) -> List[str]:
    return [match.strip() for match in _HEADING.findall(text)]


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> List[str]:
    """
    Salient terms in order of first appearance.

    Capitalised phrases, acronyms, quoted phrases, hyphenated terms and
    long words that occur at least twice.
    """
    # dict keeps insertion order, so output is stable for identical input
    found: Dict[str, None] = {}

    def add(term: str) -> None:
        term = term.strip()
        key = term.lower()
        if len(term) < 3 or key in STOPWORDS:
            return
        if key not in (k.lower() for k in found):
            found[term] = None

    for match in _CAPITALIZED.findall(text):
        add(match)
    for match in _ACRONYM.findall(text):
        add(match)
    for match in _QUOTED.findall(text):
        add(match)
    for match in _HYPHENATED.findall(text):
        add(match)

    counts: Dict[str, int] = {}
    for word in _WORD.findall(text.lower()):
        if len(word) >= 7 and word not in STOPWORDS:
            counts[word] = counts.get(word, 0) + 1
    for word, count in counts.items():
        if count >= 2:
            add(word)

    return list(found)[:limit]
