"""Lightweight text analysis shared by the chunker, ranker and context builder.

Everything here is heuristic: keyword ranking is plain term frequency,
entities come from regular expressions and language detection counts
function words. None of it is a substitute for a real NLP model.
"""

import hashlib
import math
import re
from collections import Counter
from typing import Dict, List

from .models import Entity


STOP_WORDS = frozenset({
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for', 'of',
    'with', 'by', 'is', 'are', 'was', 'were', 'be', 'been', 'have', 'has',
    'had', 'do', 'does', 'did', 'this', 'that', 'these', 'those', 'i', 'you',
    'he', 'she', 'it', 'we', 'they',
})

# Smaller list used when picking a paragraph's topic words
TOPIC_STOP_WORDS = frozenset({
    'the', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for', 'of', 'with',
    'by', 'this', 'that', 'these', 'those', 'from', 'into', 'about', 'there',
    'their', 'which', 'when', 'where', 'what', 'have', 'been', 'were', 'will',
})

TOPIC_WORDS = 3

ENTITY_PATTERNS = (
    ("email", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), 0.9),
    ("url", re.compile(r"https?://[^\s]+"), 0.95),
    ("phone", re.compile(r"\b\d{3}-\d{3}-\d{4}\b|\(\d{3}\)\s*\d{3}-\d{4}\b"), 0.8),
)

CAPITALIZED_PHRASE = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")

SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")

LANGUAGE_PATTERNS = {
    "en": re.compile(r"\b(?:the|and|or|but|in|on|at|to|for|of|with|by)\b"),
    "es": re.compile(r"\b(?:el|la|los|las|y|pero|en|de|para|con|por)\b"),
    "fr": re.compile(r"\b(?:le|la|les|et|mais|dans|de|pour|avec|par)\b"),
    "de": re.compile(r"\b(?:der|die|das|und|oder|aber|in|an|zu|für|mit|von)\b"),
    "it": re.compile(r"\b(?:il|la|e|ma|in|di|per|con|da)\b"),
    "pt": re.compile(r"\b(?:o|a|e|mas|em|de|para|com|por)\b"),
}
CJK_PATTERNS = {
    "ja": re.compile(r"[\u3040-\u309f\u30a0-\u30ff]"),
    "zh": re.compile(r"[\u4e00-\u9fff]"),
}
SUPPORTED_LANGUAGES = tuple(LANGUAGE_PATTERNS) + tuple(CJK_PATTERNS)


def tokenize(text: str) -> List[str]:
    """Lowercase word tokens with punctuation stripped."""
    return re.sub(r"[^\w\s]", " ", text.lower()).split()


def keyword_terms(text: str) -> List[str]:
    """Tokens longer than two characters that are not stop words, in order."""
    return [t for t in tokenize(text) if len(t) > 2 and t not in STOP_WORDS]


def extract_keywords(text: str, limit: int = 10) -> List[str]:
    """Rank keyword terms by frequency, first occurrence breaking ties."""
    if limit <= 0:
        return []
    counts = Counter(keyword_terms(text))
    return [word for word, _ in counts.most_common(limit)]


def extract_entities(text: str) -> List[Entity]:
    """Find emails, URLs and phone numbers, ordered by position."""
    entities = []
    for kind, pattern, confidence in ENTITY_PATTERNS:
        for match in pattern.finditer(text):
            entities.append(Entity(text=match.group(0), type=kind, confidence=confidence,
                                   start=match.start(), end=match.end()))
    entities.sort(key=lambda e: (e.start, e.end))
    return entities


def capitalized_entities(text: str) -> List[str]:
    """Capitalized phrases (e.g. "New York"), de-duplicated in order of appearance."""
    seen = []
    for match in CAPITALIZED_PHRASE.finditer(text):
        phrase = match.group(0)
        if phrase not in seen:
            seen.append(phrase)
    return seen


def split_sentences(text: str) -> List[str]:
    """Split after sentence punctuation, keeping the punctuation with its sentence."""
    return [s for s in SENTENCE_BOUNDARY.split(text.strip()) if s]


def extract_topic(text: str) -> List[str]:
    """Up to three significant words from the first sentence."""
    sentences = split_sentences(text)
    if not sentences:
        return []
    words = [w for w in tokenize(sentences[0]) if len(w) > 3 and w not in TOPIC_STOP_WORDS]
    return words[:TOPIC_WORDS]


def topic_key(text: str) -> str:
    """A hashable coarse-topic label for diversity filtering."""
    return " ".join(extract_topic(text))


def jaccard(a, b) -> float:
    a, b = set(a), set(b)
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def keyword_overlap(query: str, content: str) -> float:
    """Fraction of the query's keyword terms that appear in ``content``."""
    query_terms = set(keyword_terms(query))
    if not query_terms:
        return 0.0
    content_terms = set(keyword_terms(content))
    return len(query_terms & content_terms) / len(query_terms)


def content_hash(text: str) -> str:
    """Whitespace-insensitive hash used for de-duplication."""
    normalized = " ".join(text.split()).lower()
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()


def estimate_tokens(text: str) -> int:
    """Default token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / 4)


def detect_language(text: str) -> str:
    """Guess an ISO 639-1 code from function words; CJK scripts are checked first."""
    sample = text[:1000]
    for code, pattern in CJK_PATTERNS.items():
        if pattern.search(sample):
            return code
    lowered = sample.lower()
    best, best_count = "en", 0
    for code, pattern in LANGUAGE_PATTERNS.items():
        count = len(pattern.findall(lowered))
        if count > best_count:
            best, best_count = code, count
    return best


def detect_document_type(text: str) -> str:
    lowered = text.lower()
    if "<!doctype" in lowered or "<html" in lowered:
        return "html"
    if re.search(r"^#{1,6}\s", text, re.MULTILINE):
        return "markdown"
    stripped = text.strip()
    if stripped[:1] in ("{", "[") and '"' in stripped and ":" in stripped:
        return "json"
    if "abstract" in lowered and ("introduction" in lowered or "conclusion" in lowered):
        return "academic"
    if "```" in text or re.search(r"^\s*(def|class|function|import)\s", text, re.MULTILINE):
        return "code"
    return "text"


def text_statistics(lengths: List[int]) -> Dict[str, float]:
    if not lengths:
        return {"total_chunks": 0, "average_chunk_length": 0,
                "min_chunk_length": 0, "max_chunk_length": 0}
    return {
        "total_chunks": len(lengths),
        "average_chunk_length": sum(lengths) / len(lengths),
        "min_chunk_length": min(lengths),
        "max_chunk_length": max(lengths),
    }
