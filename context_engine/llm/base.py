"""Base generator interface for answering a query from a context window."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..rag.models import GeneratedResponse, GenerationChunk
from . import prompts


@dataclass(frozen=True)
class GenerationRequest:
    """Everything a generator needs for one answer.

    Attributes:
        query: The user's question
        context: Context passages, cited as [1]..[n]
        conversation_history: Prior turns as chat messages ({"role", "content"})
        options: Per-request overrides (model, temperature, max_tokens, system_prompt)
    """
    query: str
    context: Tuple[str, ...] = ()
    conversation_history: Tuple[Dict[str, str], ...] = ()
    options: Dict[str, Any] = field(default_factory=dict)


class Generator:
    """Base class for response generators."""

    # Set to True when generate_stream yields incrementally instead of
    # falling back to a single chunk from generate()
    supports_streaming = False

    def generate(self, request: GenerationRequest) -> GeneratedResponse:
        """Answer a request.

        Args:
            request: Query, context passages, history and options

        Returns:
            GeneratedResponse with answer, confidence, citations and follow-up questions
        """
        raise NotImplementedError

    def generate_stream(self, request: GenerationRequest) -> Iterator[GenerationChunk]:
        """Stream an answer as incremental chunks; the last chunk has ``done=True``.

        Default implementation yields the whole generate() answer as one chunk.
        """
        response = self.generate(request)
        yield GenerationChunk(content=response.answer, done=True)


class ChatGenerator(Generator):
    """Generator on top of a chat-completion backend.

    Subclasses implement :meth:`chat` (and optionally :meth:`chat_stream`);
    prompt assembly and answer post-processing live here.
    """

    def __init__(self, model: Optional[str] = None, temperature: float = 0.7,
                 max_tokens: int = 1000, include_follow_ups: bool = True):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.include_follow_ups = include_follow_ups

    def chat(self, messages: List[Dict[str, str]], model: Optional[str] = None,
             temperature: float = 0.7, max_tokens: int = 1000) -> str:
        """Send chat messages and return the reply text."""
        raise NotImplementedError

    def chat_stream(self, messages, model=None, temperature=0.7, max_tokens=1000) -> Iterator[str]:
        """Yield reply fragments. Falls back to a single chat() call."""
        yield self.chat(messages, model=model, temperature=temperature, max_tokens=max_tokens)

    def _settings(self, request: GenerationRequest) -> Dict[str, Any]:
        return {
            "model": request.options.get("model") or self.model,
            "temperature": request.options.get("temperature", self.temperature),
            "max_tokens": request.options.get("max_tokens", self.max_tokens),
        }

    def _messages(self, request: GenerationRequest) -> List[Dict[str, str]]:
        system = prompts.build_system_prompt(
            include_follow_ups=self.include_follow_ups,
            extra=request.options.get("system_prompt"),
        )
        messages = [{"role": "system", "content": system}]
        messages.extend(request.conversation_history)
        messages.append({"role": "user",
                         "content": prompts.build_user_prompt(request.query, request.context)})
        return messages

    def generate(self, request):
        reply = self.chat(self._messages(request), **self._settings(request))
        return prompts.build_response(reply, request.context)

    def generate_stream(self, request):
        if not self.supports_streaming:
            yield from super().generate_stream(request)
            return
        for fragment in self.chat_stream(self._messages(request), **self._settings(request)):
            if fragment:
                yield GenerationChunk(content=fragment, done=False)
        yield GenerationChunk(content="", done=True)
