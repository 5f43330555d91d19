"""
Generation Orchestrator

Runs one chat request end to end: retrieval, prompt assembly, streaming
generation and, on success, the conversation update.

Request Lifecycle
-----------------
    PENDING -> STREAMING -> COMPLETED | CANCELLED | FAILED

- STREAMING is entered when the first fragment arrives.
- CANCELLED is reachable from PENDING or STREAMING through `cancel()` or
  `aclose()`; the upstream read loop is stopped at its next await point.
- FAILED carries a classified `GenerationError`.
- Only COMPLETED appends to the conversation (user turn, then answer).

A transient transport failure is retried once with exponential backoff,
but only while nothing has been delivered to the caller.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, AsyncIterator, List, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..core.errors import GenerationError, GenerationTimeout, MalformedResponse, TransientTransportError
from ..retrieval.editor import EditorContext
from ..retrieval.retriever import Retriever
from ..sessions.store import Conversation
from .client import GenerationOptions, LLMClient
from .prompt import Prompt, PromptAssembler

logger = logging.getLogger("rag.generation")

_END_OF_STREAM = object()


class GenerationState(str, enum.Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self not in (GenerationState.PENDING, GenerationState.STREAMING)


async def _next_fragment(iterator: AsyncIterator[str]) -> str:
    return await iterator.__anext__()


class GenerationRequest:
    """
    One in-flight generation, consumed as an async iterator of fragments.

    The producer task writes fragments to an internal channel; iterating
    reads from it. A failure is raised from the iterator after the last
    delivered fragment.
    """

    def __init__(
        self,
        client: LLMClient,
        prompt: Prompt,
        options: GenerationOptions,
        conversation: Conversation,
        user_text: str,
        idle_timeout: float = 60.0,
        retry_backoff: float = 1.0,
        max_attempts: int = 2,
    ) -> None:
        self.client = client
        self.prompt = prompt
        self.options = options
        self.conversation = conversation
        self.user_text = user_text
        self.idle_timeout = idle_timeout
        self.retry_backoff = retry_backoff
        self.max_attempts = max_attempts

        self.state = GenerationState.PENDING
        self.error: Optional[GenerationError] = None
        self.attempts = 0

        self._fragments: List[str] = []
        self._channel: "asyncio.Queue[Any]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Caller API
    # ------------------------------------------------------------------

    @property
    def answer(self) -> str:
        return "".join(self._fragments)

    @property
    def delivered(self) -> bool:
        return bool(self._fragments)

    def start(self) -> "GenerationRequest":
        if self._task is None and not self.state.terminal:
            self._task = asyncio.create_task(self._run())
        return self

    def cancel(self) -> bool:
        """
        Request cancellation. Returns False when the request already ended.
        """
        if self.state.terminal:
            return False
        self._transition(GenerationState.CANCELLED)
        if self._task is not None:
            self._task.cancel()
        self._channel.put_nowait(_END_OF_STREAM)
        return True

    async def aclose(self) -> None:
        """Cancel if still running and wait for the upstream stream to close."""
        self.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def wait(self) -> GenerationState:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        return self.state

    def __aiter__(self) -> "GenerationRequest":
        return self

    async def __anext__(self) -> str:
        self.start()
        if self.state is GenerationState.CANCELLED:
            raise StopAsyncIteration

        item = await self._channel.get()
        if item is _END_OF_STREAM:
            # Keep the channel closed for later readers
            self._channel.put_nowait(_END_OF_STREAM)
            if self.state is GenerationState.FAILED and self.error is not None:
                raise self.error
            raise StopAsyncIteration
        if self.state is GenerationState.CANCELLED:
            raise StopAsyncIteration
        return item

    # ------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------

    def _transition(self, state: GenerationState) -> None:
        previous, self.state = self.state, state
        if state is GenerationState.CANCELLED:
            logger.info(
                "Generation cancelled in state %s after %d chars",
                previous.value,
                len(self.answer),
            )
        elif state is GenerationState.FAILED and self.error is not None:
            logger.error(
                "Generation failed (%s, retryable=%s): %s",
                self.error.kind.value,
                self.error.kind.retryable,
                self.error,
            )

    def _should_retry(self, exc: BaseException) -> bool:
        return isinstance(exc, TransientTransportError) and not self.delivered

    async def _run(self) -> None:
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=10 * self.retry_backoff),
            retry=retry_if_exception(self._should_retry),
            before_sleep=lambda rs: logger.warning(
                "Transient LLM failure, retrying: %s", rs.outcome.exception()
            ),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._consume()
        except asyncio.CancelledError:
            if not self.state.terminal:
                self._transition(GenerationState.CANCELLED)
            return
        except GenerationError as exc:
            self._fail(exc)
        except Exception as exc:
            logger.exception("Unexpected error during generation")
            self._fail(MalformedResponse(f"Unexpected generation error: {type(exc).__name__}"))
        else:
            self._complete()
        finally:
            self._channel.put_nowait(_END_OF_STREAM)

    async def _consume(self) -> None:
        self.attempts += 1
        stream = self.client.stream(self.prompt.text, self.options)
        try:
            while True:
                try:
                    fragment = await asyncio.wait_for(_next_fragment(stream), self.idle_timeout)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as exc:
                    raise GenerationTimeout(
                        f"No output from the LLM service within {self.idle_timeout}s"
                    ) from exc

                if self.state is GenerationState.PENDING:
                    self._transition(GenerationState.STREAMING)
                self._fragments.append(fragment)
                self._channel.put_nowait(fragment)
        finally:
            await stream.aclose()

    def _fail(self, exc: GenerationError) -> None:
        if self.state.terminal:
            return
        self.error = exc
        self._transition(GenerationState.FAILED)

    def _complete(self) -> None:
        if self.state.terminal:
            return
        self.conversation.append("user", self.user_text)
        self.conversation.append("assistant", self.answer)
        self._transition(GenerationState.COMPLETED)
        logger.info("Generation completed (%d chars, %d attempt(s))", len(self.answer), self.attempts)


class GenerationOrchestrator:
    """
    Builds and starts `GenerationRequest`s for chat queries.

    Parameters
    ----------
    client : LLMClient
        Streaming LLM client.

    retriever : Retriever
        Context retriever.

    options : GenerationOptions
        Model and sampling parameters.

    system_prompt : str
        Instructions placed first in every prompt.

    context_budget, prompt_budget : int
        Retrieval and total prompt budgets, in characters.

    history_turns : int
        Number of recent turns included in the prompt.
    """

    def __init__(
        self,
        client: LLMClient,
        retriever: Retriever,
        options: GenerationOptions,
        system_prompt: str,
        assembler: Optional[PromptAssembler] = None,
        context_budget: int = 6000,
        prompt_budget: int = 16000,
        history_turns: int = 10,
        idle_timeout: float = 60.0,
        retry_backoff: float = 1.0,
    ) -> None:
        self.client = client
        self.retriever = retriever
        self.options = options
        self.system_prompt = system_prompt
        self.assembler = assembler or PromptAssembler()
        self.context_budget = context_budget
        self.prompt_budget = prompt_budget
        self.history_turns = history_turns
        self.idle_timeout = idle_timeout
        self.retry_backoff = retry_backoff

    async def build_prompt(
        self,
        conversation: Conversation,
        user_text: str,
        editor_context: Optional[EditorContext] = None,
    ) -> Prompt:
        context = await self.retriever.retrieve(user_text, self.context_budget, editor_context)
        return self.assembler.assemble(
            self.system_prompt,
            context.items,
            conversation.history(self.history_turns),
            user_text,
            self.prompt_budget,
        )

    async def submit(
        self,
        conversation: Conversation,
        user_text: str,
        editor_context: Optional[EditorContext] = None,
    ) -> GenerationRequest:
        """Retrieve context, assemble the prompt and start streaming."""
        prompt = await self.build_prompt(conversation, user_text, editor_context)
        request = GenerationRequest(
            self.client,
            prompt,
            self.options,
            conversation,
            user_text,
            idle_timeout=self.idle_timeout,
            retry_backoff=self.retry_backoff,
        )
        return request.start()
