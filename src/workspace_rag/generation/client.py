"""
LLM Service Client

Streaming client for the Ollama `/api/generate` endpoint. The endpoint
answers with newline-delimited JSON objects, each carrying a `response`
text fragment; the last one has `"done": true`.

Failures are mapped onto the generation error taxonomy:

- connection errors and HTTP 5xx -> `TransientTransportError`
- HTTP timeouts -> `GenerationTimeout`
- HTTP 4xx or an `error` field in the stream -> `UpstreamRefusal`
- lines that are not protocol objects -> `MalformedResponse`
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from ..core.errors import (
    GenerationTimeout,
    MalformedResponse,
    TransientTransportError,
    UpstreamRefusal,
)

logger = logging.getLogger("rag.generation.client")


@dataclass(frozen=True)
class GenerationOptions:
    model: str
    temperature: float = 0.3
    top_k: int = 40
    top_p: float = 0.9
    max_output_tokens: int = 1024

    def to_payload(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "top_k": self.top_k,
            "top_p": self.top_p,
            "num_predict": self.max_output_tokens,
        }


class LLMClient:
    """
    Stateless streaming client; one HTTP connection per `stream` call.

    Parameters
    ----------
    base_url : str
        Root URL of the Ollama server.

    timeout : float
        Connect/read timeout for the HTTP transport.

    transport : Optional[httpx.AsyncBaseTransport]
        Transport override (tests use `httpx.MockTransport`).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        """
        Yield answer fragments in order until the service signals the end.

        Closing the returned generator closes the upstream connection.
        """
        payload = {
            "model": options.model,
            "prompt": prompt,
            "stream": True,
            "options": options.to_payload(),
        }

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                async with client.stream("POST", "/api/generate", json=payload) as response:
                    if response.status_code >= 500:
                        raise TransientTransportError(
                            f"LLM service answered HTTP {response.status_code}"
                        )
                    if response.status_code >= 400:
                        body = await response.aread()
                        raise UpstreamRefusal(
                            f"LLM service rejected the request (HTTP {response.status_code}): "
                            f"{body.decode('utf-8', errors='replace')[:200]}"
                        )

                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        event = _parse_event(line)

                        fragment = event.get("response", "")
                        if fragment:
                            yield fragment
                        if event.get("done"):
                            return

                    raise MalformedResponse("LLM stream ended without a completion marker")

        except httpx.TimeoutException as exc:
            raise GenerationTimeout(f"LLM request timed out: {type(exc).__name__}") from exc
        except httpx.HTTPError as exc:
            logger.warning("LLM transport error (%s): %s", type(exc).__name__, exc)
            raise TransientTransportError(
                f"LLM transport failure: {type(exc).__name__}"
            ) from exc


def _parse_event(line: str) -> Dict[str, Any]:
    try:
        event = json.loads(line)
    except ValueError as exc:
        raise MalformedResponse(f"Undecodable LLM stream line: {line[:100]!r}") from exc

    if not isinstance(event, dict):
        raise MalformedResponse(f"Unexpected LLM stream item: {line[:100]!r}")
    if "error" in event:
        raise UpstreamRefusal(f"LLM service error: {event['error']}")
    if not isinstance(event.get("response", ""), str):
        raise MalformedResponse("LLM stream item has a non-text 'response' field")
    return event
