"""Ollama generator and embedder."""

import logging

import ollama

from ..errors import GenerationFailed, RetrievalFailed
from ..rag.interfaces import Embedder
from .base import ChatGenerator


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_CHAT_MODEL = "llama3"
DEFAULT_EMBED_MODEL = "nomic-embed-text"


def _message_content(response) -> str:
    """Pull the reply text out of a chat response (dict or ChatResponse object)."""
    message = response.get("message") if isinstance(response, dict) else getattr(response, "message", None)
    if isinstance(message, dict):
        content = message.get("content")
    else:
        content = getattr(message, "content", None)
    if content is None:
        raise GenerationFailed(f"No content in Ollama response: {type(response).__name__}")
    return content


class OllamaGenerator(ChatGenerator):
    """Generator backed by a local Ollama server."""

    supports_streaming = True

    def __init__(self, base_url=DEFAULT_BASE_URL, model=DEFAULT_CHAT_MODEL, client=None, **kwargs):
        """Initialize Ollama generator.

        Args:
            base_url: Base URL of Ollama service
            model: Default chat model
            client: Pre-built ollama.Client (mainly for tests)
        """
        super().__init__(model=model, **kwargs)
        self.client = client or ollama.Client(host=base_url.rstrip("/"))

    def _options(self, temperature, max_tokens):
        return {"temperature": temperature, "num_predict": max_tokens}

    def chat(self, messages, model=None, temperature=0.7, max_tokens=1000):
        model = model or self.model
        logger.debug("Sending %d messages to Ollama model %s", len(messages), model)
        try:
            response = self.client.chat(model=model, messages=messages,
                                        options=self._options(temperature, max_tokens))
        except ollama.ResponseError as e:
            raise GenerationFailed(f"Ollama error: {e.error}", cause=e) from e
        return _message_content(response)

    def chat_stream(self, messages, model=None, temperature=0.7, max_tokens=1000):
        model = model or self.model
        try:
            for part in self.client.chat(model=model, messages=messages, stream=True,
                                         options=self._options(temperature, max_tokens)):
                yield _message_content(part)
        except ollama.ResponseError as e:
            raise GenerationFailed(f"Ollama error: {e.error}", cause=e) from e


class OllamaEmbedder(Embedder):
    """Embedder using Ollama's /api/embed endpoint."""

    def __init__(self, base_url=DEFAULT_BASE_URL, model=DEFAULT_EMBED_MODEL, client=None):
        self.model = model
        self.client = client or ollama.Client(host=base_url.rstrip("/"))

    def _embed(self, texts):
        try:
            response = self.client.embed(model=self.model, input=texts)
        except ollama.ResponseError as e:
            raise RetrievalFailed(f"Ollama embedding error: {e.error}", cause=e) from e
        embeddings = response["embeddings"]
        if len(embeddings) != len(texts):
            raise RetrievalFailed(f"Ollama returned {len(embeddings)} embeddings for {len(texts)} inputs")
        return [list(e) for e in embeddings]

    def embed(self, text):
        return self._embed([text])[0]

    def embed_batch(self, texts):
        if not texts:
            return []
        return self._embed(list(texts))
