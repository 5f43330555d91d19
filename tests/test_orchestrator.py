"""
Generation Orchestrator Tests

The LLM client is replaced by a scripted async generator: strings are
yielded as fragments, floats are pauses (seconds) and exceptions are raised.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from workspace_rag.core.errors import (
    FailureKind,
    GenerationTimeout,
    TransientTransportError,
    UpstreamRefusal,
)
from workspace_rag.generation.client import GenerationOptions
from workspace_rag.generation.orchestrator import GenerationOrchestrator, GenerationState
from workspace_rag.retrieval.retriever import RetrievedContext
from workspace_rag.sessions.store import Conversation


class ScriptedClient:
    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.calls = 0
        self.closed = 0
        self.prompts = []

    async def stream(self, prompt, options):
        script = self.scripts[min(self.calls, len(self.scripts) - 1)]
        self.calls += 1
        self.prompts.append(prompt)
        try:
            for step in script:
                if isinstance(step, BaseException):
                    raise step
                if isinstance(step, float):
                    await asyncio.sleep(step)
                    continue
                yield step
        finally:
            self.closed += 1


def make_orchestrator(client, idle_timeout: float = 5.0) -> GenerationOrchestrator:
    retriever = AsyncMock()
    retriever.retrieve.return_value = RetrievedContext()
    return GenerationOrchestrator(
        client,
        retriever,
        GenerationOptions(model="test"),
        system_prompt="You are helpful.",
        context_budget=500,
        prompt_budget=2000,
        idle_timeout=idle_timeout,
        retry_backoff=0.0,
    )


async def drain(request) -> str:
    return "".join([fragment async for fragment in request])


@pytest.fixture
def conversation():
    return Conversation("session-1")


@pytest.mark.asyncio
async def test_completed_request_appends_both_turns(conversation):
    client = ScriptedClient(["Hel", "lo"])
    request = await make_orchestrator(client).submit(conversation, "Say hello")

    assert await drain(request) == "Hello"
    assert await request.wait() is GenerationState.COMPLETED
    assert [(t.role, t.text) for t in conversation.history()] == [
        ("user", "Say hello"),
        ("assistant", "Hello"),
    ]


@pytest.mark.asyncio
async def test_prompt_includes_history_and_query(conversation):
    conversation.append("user", "earlier question")
    conversation.append("assistant", "earlier answer")
    client = ScriptedClient(["ok"])
    orchestrator = make_orchestrator(client)

    request = await orchestrator.submit(conversation, "new question")
    await drain(request)

    prompt = client.prompts[0]
    assert prompt.index("You are helpful.") < prompt.index("earlier answer") < prompt.index("new question")
    orchestrator.retriever.retrieve.assert_awaited_once_with("new question", 500, None)


@pytest.mark.asyncio
async def test_cancel_before_first_token(conversation):
    client = ScriptedClient([5.0, "late"])
    request = await make_orchestrator(client).submit(conversation, "question")

    assert request.cancel()

    assert await request.wait() is GenerationState.CANCELLED
    assert await drain(request) == ""
    assert request.error is None
    assert len(conversation) == 0


@pytest.mark.asyncio
async def test_cancel_after_partial_text_discards_answer(conversation):
    conversation.append("user", "previous")
    client = ScriptedClient(["partial", 5.0, "rest"])
    request = await make_orchestrator(client).submit(conversation, "question")

    assert await request.__anext__() == "partial"
    assert request.state is GenerationState.STREAMING

    await request.aclose()

    assert request.state is GenerationState.CANCELLED
    assert client.closed == 1
    assert len(conversation) == 1


@pytest.mark.asyncio
async def test_transient_failure_is_retried_once(conversation):
    client = ScriptedClient([TransientTransportError("connection reset")], ["recovered"])
    request = await make_orchestrator(client).submit(conversation, "question")

    assert await drain(request) == "recovered"
    assert request.state is GenerationState.COMPLETED
    assert client.calls == 2


@pytest.mark.asyncio
async def test_transient_failure_after_partial_text_is_not_retried(conversation):
    client = ScriptedClient(["partial", TransientTransportError("connection reset")], ["again"])
    request = await make_orchestrator(client).submit(conversation, "question")

    received = []
    with pytest.raises(TransientTransportError):
        async for fragment in request:
            received.append(fragment)

    assert received == ["partial"]
    assert request.state is GenerationState.FAILED
    assert client.calls == 1
    assert len(conversation) == 0


@pytest.mark.asyncio
async def test_refusal_is_not_retried(conversation):
    client = ScriptedClient([UpstreamRefusal("model not found")], ["never"])
    request = await make_orchestrator(client).submit(conversation, "question")

    with pytest.raises(UpstreamRefusal):
        await drain(request)

    assert request.state is GenerationState.FAILED
    assert request.error.kind is FailureKind.REFUSAL
    assert client.calls == 1


@pytest.mark.asyncio
async def test_repeated_transport_failure_surfaces(conversation):
    client = ScriptedClient([TransientTransportError("down")], [TransientTransportError("still down")])
    request = await make_orchestrator(client).submit(conversation, "question")

    with pytest.raises(TransientTransportError):
        await drain(request)

    assert client.calls == 2
    assert request.error.to_payload()["retryable"] is True


@pytest.mark.asyncio
async def test_idle_timeout_fails_request(conversation):
    client = ScriptedClient([1.0, "too late"])
    request = await make_orchestrator(client, idle_timeout=0.05).submit(conversation, "question")

    with pytest.raises(GenerationTimeout):
        await drain(request)

    assert request.state is GenerationState.FAILED
    assert request.error.kind is FailureKind.TIMEOUT
    assert client.calls == 2
    assert len(conversation) == 0


@pytest.mark.asyncio
async def test_cancel_after_completion_is_ignored(conversation):
    request = await make_orchestrator(ScriptedClient(["done"])).submit(conversation, "question")
    await drain(request)

    assert not request.cancel()
    assert request.state is GenerationState.COMPLETED
