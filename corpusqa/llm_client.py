"""Ollama API client wrapper with error handling."""
import json
from typing import Dict, List, Optional

import httpx
import structlog

from corpusqa import config
from corpusqa.errors import UpstreamError

logger = structlog.get_logger()


class OllamaClient:
    """Async client for the Ollama embed and generate endpoints.

    Every call opens a short-lived ``httpx.AsyncClient`` bounded by
    ``timeout``; cancelling the awaiting task aborts the request.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            timeout: Request timeout in seconds (defaults to config.REQUEST_TIMEOUT)
            transport: Optional httpx transport (used to stub the API in tests)
        """
        self.base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        self.timeout = timeout or config.REQUEST_TIMEOUT
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or self.timeout,
            transport=self._transport,
        )

    async def embed(self, texts: List[str], model: str) -> List[List[float]]:
        """Generate embeddings for a list of texts.

        Args:
            texts: Texts to embed
            model: Embedding model name

        Returns:
            One vector per input text, in input order

        Raises:
            UpstreamError: On connection failure, error status or malformed payload
        """
        payload = {"model": model, "input": texts}

        try:
            async with self._client() as client:
                logger.debug(
                    "ollama_embed_request",
                    model=model,
                    batch_size=len(texts),
                )
                response = await client.post("/api/embed", json=payload)
                response.raise_for_status()
                data = response.json()

        except httpx.HTTPStatusError as e:
            logger.error(
                "ollama_embed_http_error",
                error=str(e),
                status_code=e.response.status_code,
            )
            raise UpstreamError(
                f"Embedding request failed with status {e.response.status_code}: "
                f"{e.response.text[:200]}",
                operation="embed",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("ollama_embed_error", error=str(e), base_url=self.base_url)
            raise UpstreamError(
                f"Embedding backend unreachable at {self.base_url}: {e}",
                operation="embed",
            ) from e
        except ValueError as e:
            raise UpstreamError(
                f"Embedding backend returned invalid JSON: {e}", operation="embed"
            ) from e

        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise UpstreamError(
                f"Expected {len(texts)} embeddings, got "
                f"{len(embeddings) if isinstance(embeddings, list) else 'none'}",
                operation="embed",
            )
        if any(not vector for vector in embeddings):
            raise UpstreamError("Empty embedding returned from Ollama", operation="embed")

        logger.debug(
            "ollama_embed_response",
            model=model,
            dimension=len(embeddings[0]) if embeddings else 0,
        )

        return [[float(v) for v in vector] for vector in embeddings]

    async def generate(self, prompt: str, model: str, stream: bool = True) -> str:
        """Generate a completion, accumulating a streamed response.

        Args:
            prompt: Prompt text
            model: Generation model name
            stream: Ask Ollama for NDJSON chunks instead of one object

        Returns:
            The full completion text

        Raises:
            UpstreamError: On connection failure, error status or error payload
        """
        payload = {"model": model, "prompt": prompt, "stream": stream}
        parts: List[str] = []

        try:
            async with self._client() as client:
                logger.info(
                    "ollama_generate_request",
                    model=model,
                    prompt_length=len(prompt),
                    stream=stream,
                )
                async with client.stream("POST", "/api/generate", json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", "replace")
                        raise UpstreamError(
                            f"Generation request failed with status "
                            f"{response.status_code}: {body[:200]}",
                            operation="generate",
                            status_code=response.status_code,
                        )

                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        message = self._decode_line(line)
                        parts.append(message.get("response", ""))
                        if message.get("done"):
                            break

        except httpx.HTTPError as e:
            logger.error("ollama_generate_error", error=str(e), base_url=self.base_url)
            raise UpstreamError(
                f"Generation backend unreachable at {self.base_url}: {e}",
                operation="generate",
            ) from e

        text = "".join(parts)

        logger.info(
            "ollama_generate_response",
            model=model,
            response_length=len(text),
        )

        return text

    @staticmethod
    def _decode_line(line: str) -> Dict:
        try:
            message = json.loads(line)
        except ValueError as e:
            raise UpstreamError(
                f"Generation backend returned invalid JSON: {e}", operation="generate"
            ) from e
        if not isinstance(message, dict):
            raise UpstreamError("Generation backend returned a non-object message", operation="generate")
        if message.get("error"):
            raise UpstreamError(
                f"Generation backend error: {message['error']}", operation="generate"
            )
        return message

    async def list_models(self) -> List[str]:
        """List all available Ollama models.

        Raises:
            UpstreamError: On API errors
        """
        try:
            async with self._client(timeout=5.0) as client:
                response = await client.get("/api/tags")
                response.raise_for_status()
                data = response.json()
                return [m["name"] for m in data.get("models", [])]
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error("ollama_list_models_error", error=str(e))
            raise UpstreamError(f"Failed to list Ollama models: {e}", operation="list_models") from e
