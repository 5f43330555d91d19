"""
Embedding Client

Turns chunk and query text into dense vectors for `EmbeddingScorer`.

Two wire protocols are understood:

- ``ollama``: ``POST {base_url}/api/embed`` with ``{"model", "input"}``,
  answered by ``{"embeddings": [[...], ...]}``
- ``openai``: ``POST {base_url}/v1/embeddings``, answered by
  ``{"data": [{"embedding": [...]}, ...]}``

One `httpx.AsyncClient` is kept per embedder and released by `aclose()`
(the index store calls it when it closes). A later call opens a new one.
Every failure surfaces as `EmbeddingUnavailable`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional, Sequence

import httpx

from ..core.errors import EmbeddingUnavailable

logger = logging.getLogger("rag.index.embedder")

EmbeddingProtocol = Literal["ollama", "openai"]

ENDPOINTS: Dict[str, str] = {
    "ollama": "/api/embed",
    "openai": "/v1/embeddings",
}


def _as_vector(values: Any, position: int) -> List[float]:
    if (
        not isinstance(values, list)
        or not values
        or not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values)
    ):
        raise EmbeddingUnavailable(f"Embedding #{position} is not a list of numbers.")
    return [float(v) for v in values]


def parse_vectors(protocol: str, body: Any) -> List[List[float]]:
    """Extract the vectors of one response body, in input order."""
    if not isinstance(body, dict):
        raise EmbeddingUnavailable("Embedding response is not a JSON object.")

    if protocol == "ollama":
        rows = body.get("embeddings")
        if not isinstance(rows, list):
            raise EmbeddingUnavailable("Embedding response has no 'embeddings' list.")
    else:
        records = body.get("data")
        if not isinstance(records, list):
            raise EmbeddingUnavailable("Embedding response has no 'data' list.")
        # Providers may answer out of order; `index` restores input order
        if all(isinstance(r, dict) and isinstance(r.get("index"), int) for r in records):
            records = sorted(records, key=lambda r: r["index"])
        rows = [r.get("embedding") if isinstance(r, dict) else None for r in records]

    return [_as_vector(row, n) for n, row in enumerate(rows)]


class Embedder:
    """
    Batched embedding client.

    Parameters
    ----------
    base_url : str
        Root URL of the service, e.g. ``http://localhost:11434``.

    model : str
        Embedding model name.

    protocol : {"ollama", "openai"}
        Wire protocol of the service.

    api_key : Optional[str]
        Bearer token, when the service requires one.

    batch_size : int
        Maximum number of texts per request.

    transport : Optional[httpx.AsyncBaseTransport]
        Transport override (tests use `httpx.MockTransport`).
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        protocol: EmbeddingProtocol = "ollama",
        api_key: Optional[str] = None,
        batch_size: int = 32,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if protocol not in ENDPOINTS:
            raise ValueError(f"Unknown embedding protocol: {protocol!r}")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive.")

        self.base_url = base_url.rstrip("/")
        self.model = model
        self.protocol = protocol
        self.api_key = api_key
        self.batch_size = batch_size
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def endpoint(self) -> str:
        return ENDPOINTS[self.protocol]

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        try:
            response = await self._http().post(
                self.endpoint,
                json={"model": self.model, "input": batch},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            logger.error("Embedding service call failed for %d text(s): %r", len(batch), exc)
            raise EmbeddingUnavailable(
                f"Embedding service unavailable: {type(exc).__name__}"
            ) from exc
        except ValueError as exc:
            raise EmbeddingUnavailable("Embedding response is not JSON.") from exc

        vectors = parse_vectors(self.protocol, body)
        if len(vectors) != len(batch):
            raise EmbeddingUnavailable(
                f"Asked for {len(batch)} embedding(s), received {len(vectors)}."
            )
        return vectors

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Return one vector per text, in input order.

        Raises
        ------
        EmbeddingUnavailable
            If a request fails or a response cannot be used.
        """
        vectors: List[List[float]] = []
        for offset in range(0, len(texts), self.batch_size):
            vectors.extend(await self._embed_batch(list(texts[offset:offset + self.batch_size])))
        return vectors
