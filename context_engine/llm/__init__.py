"""Generator backends.

This module provides an abstract interface (Generator) with concrete
implementations for local LLM services:
- OllamaGenerator / OllamaEmbedder: For Ollama (default on localhost:11434)
- OpenAICompatibleGenerator / OpenAICompatibleEmbedder: For OpenAI-compatible
  servers such as LM Studio (default on localhost:1234)

Usage:
    from context_engine.llm import OllamaGenerator

    generator = OllamaGenerator(model="llama3")
    response = generator.generate(GenerationRequest(query="Hello"))
"""

from .base import ChatGenerator, GenerationRequest, Generator
from .ollama import OllamaEmbedder, OllamaGenerator
from .openai_compat import OpenAICompatibleEmbedder, OpenAICompatibleGenerator

__all__ = [
    'Generator',
    'ChatGenerator',
    'GenerationRequest',
    'OllamaGenerator',
    'OllamaEmbedder',
    'OpenAICompatibleGenerator',
    'OpenAICompatibleEmbedder',
]
