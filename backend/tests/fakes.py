"""Test doubles for the generation capability and the change feed."""
import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from docchat.core.llm.llm_client import GenerationResult

HANG = "hang"

Outcome = Union[GenerationResult, BaseException, str]


def answer(text: str, input_tokens: int = 120, output_tokens: int = 40) -> GenerationResult:
    return GenerationResult(text=text, input_tokens=input_tokens, output_tokens=output_tokens, model="fake-model")


class ScriptedGenerationClient:
    """Replays outcomes in order (the last one repeats).

    An outcome is a GenerationResult to return, an exception to raise, or
    HANG to never answer (so the invoker's timeout fires). A `responder`
    callable can decide per request instead.
    """

    def __init__(
        self,
        outcomes: Sequence[Outcome] = (),
        responder: Optional[Callable[[List[Dict[str, str]]], Outcome]] = None,
    ):
        self.outcomes = list(outcomes)
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []

    @property
    def questions(self) -> List[str]:
        return [call["messages"][-1]["content"] for call in self.calls]

    async def complete(self, *, system, messages) -> GenerationResult:
        self.calls.append({"system": system, "messages": messages})
        if self.responder is not None:
            outcome = self.responder(messages)
        elif len(self.outcomes) > 1:
            outcome = self.outcomes.pop(0)
        else:
            outcome = self.outcomes[0]

        if isinstance(outcome, BaseException):
            raise outcome
        if outcome == HANG:
            await asyncio.sleep(3600)
        # Yield once so concurrent pipelines interleave like real I/O
        await asyncio.sleep(0)
        return GenerationResult(
            text=outcome.text,
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
            model=outcome.model,
        )


class ListFeed:
    """Delivers a fixed list of events, then ends."""

    def __init__(self, events=()):
        self._events = list(events)
        self.closed = False

    async def events(self):
        for event in self._events:
            if self.closed:
                return
            yield event

    async def close(self) -> None:
        self.closed = True


class QueueFeed:
    """Open-ended feed; events are pushed while the worker runs."""

    _CLOSE = object()

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()

    def push(self, event) -> None:
        self.queue.put_nowait(event)

    async def events(self):
        while True:
            event = await self.queue.get()
            if event is self._CLOSE:
                return
            yield event

    async def close(self) -> None:
        self.queue.put_nowait(self._CLOSE)


async def no_sleep(_seconds: float) -> None:
    return None


class RecordingPublisher:
    def __init__(self):
        self.published = []

    def __call__(self, message, citation_count: int) -> bool:
        self.published.append((message.id, message.reply_to_id, citation_count))
        return True
