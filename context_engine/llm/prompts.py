"""Prompt assembly and answer post-processing shared by the chat generators."""

import re
from typing import List, Sequence, Tuple

from ..rag.models import Citation, GeneratedResponse
from ..rag.text import split_sentences


BASE_SYSTEM_PROMPT = """You are a helpful assistant that answers questions based on the provided context.

1. Answer using only information from the context.
2. If the context does not contain enough information, say so clearly.
3. Cite the passages you use with their number in square brackets, e.g. [1]."""

FOLLOW_UP_INSTRUCTION = (
    "After your answer, add a line 'Follow-up questions:' followed by 2-3 "
    "relevant follow-up questions, one per line."
)

CITATION_PATTERN = re.compile(r"\[(?:Source\s+)?(\d+)\]")
FOLLOW_UP_HEADING = re.compile(r"^\s*(?:\*\*)?follow[- ]up questions:?(?:\*\*)?:?\s*$",
                               re.IGNORECASE | re.MULTILINE)
MAX_FOLLOW_UPS = 3
NO_CONTEXT_CONFIDENCE = 0.1


def build_system_prompt(include_follow_ups: bool = True, extra: str = None) -> str:
    prompt = BASE_SYSTEM_PROMPT
    if include_follow_ups:
        prompt += "\n\n" + FOLLOW_UP_INSTRUCTION
    if extra:
        prompt += "\n\n" + extra
    return prompt


def build_user_prompt(query: str, context: Sequence[str]) -> str:
    if not context:
        return f"Question: {query}"
    passages = "\n\n".join(f"[{i}]\n{text}" for i, text in enumerate(context, start=1))
    return (f"Context:\n\n{passages}\n\nQuestion: {query}\n\n"
            "Please provide a comprehensive answer based on the context above.")


def split_follow_ups(reply: str) -> Tuple[str, List[str]]:
    """Separate a trailing follow-up question section from the answer."""
    match = FOLLOW_UP_HEADING.search(reply)
    if not match:
        return reply.strip(), []
    answer = reply[:match.start()].strip()
    questions = []
    for line in reply[match.end():].splitlines():
        line = re.sub(r"^\s*(?:[-*]|\d+[.)])\s*", "", line).strip()
        if line.endswith("?") and len(line) > 10:
            questions.append(line)
    return answer, questions[:MAX_FOLLOW_UPS]


def _words(text: str) -> List[str]:
    return [w for w in text.lower().split() if len(w) > 3]


def best_snippet(answer: str, passage: str) -> str:
    """The passage sentence sharing the most words with the answer."""
    answer_words = set(_words(answer))
    best, best_score = "", 0
    for sentence in split_sentences(passage):
        score = len(answer_words & set(_words(sentence)))
        if score > best_score and len(sentence.strip()) > 20:
            best, best_score = sentence.strip(), score
    if best:
        return best
    return passage[:200] + ("..." if len(passage) > 200 else "")


def passage_confidence(answer: str, passage: str) -> float:
    answer_words = set(answer.lower().split())
    passage_words = passage.lower().split()
    common = [w for w in passage_words if w in answer_words and len(w) > 3]
    return min(1.0, len(common) / max(len(passage_words) / 10, 1))


def extract_citations(answer: str, context: Sequence[str]) -> List[Citation]:
    """Citations for each in-range [n] marker, first occurrence only."""
    citations = []
    seen = set()
    for match in CITATION_PATTERN.finditer(answer):
        index = int(match.group(1))
        if index in seen or not 1 <= index <= len(context):
            continue
        seen.add(index)
        passage = context[index - 1]
        citations.append(Citation(index=index, snippet=best_snippet(answer, passage),
                                  relevance_score=passage_confidence(answer, passage)))
    return citations


def context_confidence(answer: str, context: Sequence[str]) -> float:
    """How much of the context vocabulary the answer reuses, in [0, 1]."""
    if not context:
        return NO_CONTEXT_CONFIDENCE
    answer_words = set(answer.lower().split())
    matches = 0
    total = 0
    for passage in context:
        words = passage.lower().split()
        matches += sum(1 for w in words if w in answer_words and len(w) > 3)
        total += len(words)
    return min(1.0, matches / max(total / 5, 1))


def build_response(reply: str, context: Sequence[str]) -> GeneratedResponse:
    answer, follow_ups = split_follow_ups(reply)
    return GeneratedResponse(
        answer=answer,
        confidence=context_confidence(answer, context),
        citations=tuple(extract_citations(answer, context)),
        follow_up_questions=tuple(follow_ups),
    )
