"""Generator and embedder for OpenAI-compatible servers such as LM Studio."""

import json
import logging

import requests

from ..errors import GenerationFailed, RetrievalFailed
from ..rag.interfaces import Embedder
from .base import ChatGenerator


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:1234"
REQUEST_TIMEOUT = 60


def _error_detail(error: requests.exceptions.HTTPError) -> str:
    """Best-effort error message from an HTTP error body."""
    response = error.response
    if response is None:
        return str(error)
    try:
        body = response.json()
    except ValueError:
        return f"{response.status_code}: {response.text[:200]}"
    if isinstance(body, dict):
        err = body.get("error", body.get("message", body))
        if isinstance(err, dict):
            err = err.get("message", err)
        return f"{response.status_code}: {err}"
    return f"{response.status_code}: {body}"


class OpenAICompatibleGenerator(ChatGenerator):
    """Generator speaking the /v1/chat/completions API."""

    supports_streaming = True

    def __init__(self, base_url=DEFAULT_BASE_URL, model="local-model",
                 timeout=REQUEST_TIMEOUT, session=None, **kwargs):
        super().__init__(model=model, **kwargs)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _payload(self, messages, model, temperature, max_tokens, stream=False):
        return {
            "model": model or self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }

    def chat(self, messages, model=None, temperature=0.7, max_tokens=1000):
        url = f"{self.base_url}/v1/chat/completions"
        try:
            response = self.session.post(url, json=self._payload(messages, model, temperature, max_tokens),
                                         headers={"Content-Type": "application/json"},
                                         timeout=self.timeout)
            response.raise_for_status()
            return response.json()["choices"][0]["message"]["content"]
        except requests.exceptions.HTTPError as e:
            raise GenerationFailed(f"Chat completion failed: {_error_detail(e)}", cause=e) from e
        except requests.exceptions.RequestException as e:
            raise GenerationFailed(f"Could not reach {url}: {e}", cause=e) from e
        except (KeyError, IndexError, ValueError) as e:
            raise GenerationFailed(f"Unexpected chat completion response: {e}", cause=e) from e

    def chat_stream(self, messages, model=None, temperature=0.7, max_tokens=1000):
        """Yield content deltas from the server-sent event stream."""
        url = f"{self.base_url}/v1/chat/completions"
        payload = self._payload(messages, model, temperature, max_tokens, stream=True)
        try:
            with self.session.post(url, json=payload, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                for line in response.iter_lines(decode_unicode=True):
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        delta = json.loads(data)["choices"][0].get("delta", {})
                    except (ValueError, KeyError, IndexError):
                        logger.debug("Skipping malformed stream line: %r", data[:80])
                        continue
                    if delta.get("content"):
                        yield delta["content"]
        except requests.exceptions.HTTPError as e:
            raise GenerationFailed(f"Chat completion stream failed: {_error_detail(e)}", cause=e) from e
        except requests.exceptions.RequestException as e:
            raise GenerationFailed(f"Could not reach {url}: {e}", cause=e) from e


class OpenAICompatibleEmbedder(Embedder):
    """Embedder speaking the /v1/embeddings API."""

    def __init__(self, base_url=DEFAULT_BASE_URL, model="text-embedding-nomic-embed-text-v1.5",
                 timeout=REQUEST_TIMEOUT, session=None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def embed_batch(self, texts):
        if not texts:
            return []
        url = f"{self.base_url}/v1/embeddings"
        try:
            response = self.session.post(url, json={"model": self.model, "input": list(texts)},
                                         timeout=self.timeout)
            response.raise_for_status()
            rows = sorted(response.json()["data"], key=lambda row: row.get("index", 0))
            return [row["embedding"] for row in rows]
        except requests.exceptions.HTTPError as e:
            raise RetrievalFailed(f"Embedding request failed: {_error_detail(e)}", cause=e) from e
        except requests.exceptions.RequestException as e:
            raise RetrievalFailed(f"Could not reach {url}: {e}", cause=e) from e
        except (KeyError, ValueError) as e:
            raise RetrievalFailed(f"Unexpected embedding response: {e}", cause=e) from e

    def embed(self, text):
        return self.embed_batch([text])[0]
