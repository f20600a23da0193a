"""Embedding and generation backends.

The pipeline depends only on the two protocols below. Live variants talk to
Ollama; the hash/echo variants are deterministic and need no network, so
the chunking, index and retrieval core can run offline.
"""
import hashlib
import math
import re
from typing import Callable, List, Optional, Protocol, Tuple

import structlog

from corpusqa.config import Settings
from corpusqa.llm_client import OllamaClient

logger = structlog.get_logger()


class EmbeddingBackend(Protocol):
    """Converts text to a fixed-dimension vector."""

    model_name: str

    async def embed(self, text: str) -> List[float]:
        ...

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        ...


class GenerationBackend(Protocol):
    """Converts a prompt to a completion string."""

    default_model: str

    async def generate(self, prompt: str, model: Optional[str] = None) -> str:
        ...


class OllamaEmbedder:
    """Embedding backend served by Ollama's ``/api/embed``."""

    def __init__(self, client: OllamaClient, model_name: str):
        self.client = client
        self.model_name = model_name

    async def embed(self, text: str) -> List[float]:
        vectors = await self.client.embed([text], model=self.model_name)
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        return await self.client.embed(list(texts), model=self.model_name)


class OllamaGenerator:
    """Generation backend served by Ollama's ``/api/generate``."""

    def __init__(self, client: OllamaClient, default_model: str):
        self.client = client
        self.default_model = default_model

    async def generate(self, prompt: str, model: Optional[str] = None) -> str:
        return await self.client.generate(prompt, model=model or self.default_model)


_TOKEN = re.compile(r"\w+", re.UNICODE)


class HashEmbedder:
    """Deterministic bag-of-words embedder using the hashing trick.

    Texts sharing words produce vectors with positive cosine similarity;
    identical texts produce identical vectors. Text with no word characters
    maps to the zero vector.
    """

    def __init__(self, dimension: int = 64, model_name: str = "hash-embedder"):
        self.dimension = dimension
        self.model_name = model_name

    async def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0.0:
            return vector
        return [v / norm for v in vector]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [await self.embed(text) for text in texts]


class EchoGenerator:
    """Deterministic generation backend that records every prompt.

    Replies with ``reply`` if given, otherwise with a callable's result, or
    by default with a short acknowledgement naming the model.
    """

    def __init__(
        self,
        reply: Optional[str] = None,
        responder: Optional[Callable[[str], str]] = None,
        default_model: str = "echo",
    ):
        self.reply = reply
        self.responder = responder
        self.default_model = default_model
        self.calls: List[Tuple[str, str]] = []

    async def generate(self, prompt: str, model: Optional[str] = None) -> str:
        model = model or self.default_model
        self.calls.append((prompt, model))
        if self.reply is not None:
            return self.reply
        if self.responder is not None:
            return self.responder(prompt)
        return f"[{model}] received a prompt of {len(prompt)} characters"


def build_backends(
    settings: Settings, mock: bool = False
) -> Tuple[EmbeddingBackend, GenerationBackend]:
    """Create the embedding and generation backends for a settings object.

    Args:
        settings: Explicit configuration
        mock: Use the deterministic offline backends instead of Ollama

    Returns:
        Tuple of (embedder, generator)
    """
    if mock:
        logger.info("mock_backends_selected")
        return HashEmbedder(), EchoGenerator(default_model=settings.chat_model)

    client = OllamaClient(base_url=settings.ollama_base_url, timeout=settings.request_timeout)
    logger.info(
        "ollama_backends_selected",
        base_url=settings.ollama_base_url,
        embedding_model=settings.embedding_model,
        chat_model=settings.chat_model,
    )
    return (
        OllamaEmbedder(client, settings.embedding_model),
        OllamaGenerator(client, settings.chat_model),
    )
