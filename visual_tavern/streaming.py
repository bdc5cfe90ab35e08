"""Incremental step emission over a streamed LLM response.

After every token the whole buffer is re-parsed and any step index not yet
sent is emitted, in order. A step followed by another step is closed and
final. The newest step is held back: its tag may still be streaming, and
continuation lines may still extend it. The one exception is a Choice
once the buffer "ends cleanly" (trimmed text ends with ``]``): a Choice is
only parsed after ``[END_CHOICE]``, and nothing can change it afterwards.
finish() parses the complete text once more and flushes whatever is left.

Ordering depends only on buffer content. Each index is emitted at most once,
and an emitted step always equals the step at that index in the final parse.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable

from .models import Choice, CompleteEvent, NarrativeResult, RawTextEvent, StepEvent, StreamEvent

Parser = Callable[[str], NarrativeResult]


class IncrementalEmitter:
    def __init__(self, parse: Parser) -> None:
        self._parse = parse
        self._buffer = ""
        self._sent = 0
        self._finished = False

    @property
    def text(self) -> str:
        return self._buffer

    @property
    def sent_count(self) -> int:
        return self._sent

    def feed(self, token: str) -> list[StepEvent]:
        """Append a token and return the steps that became safe to emit."""
        if self._finished:
            raise RuntimeError("Emitter already finished")
        self._buffer += token
        steps = self._parse(self._buffer).steps
        ends_cleanly = self._buffer.rstrip().endswith("]")

        events: list[StepEvent] = []
        for i in range(self._sent, len(steps)):
            if i == len(steps) - 1 and not (ends_cleanly and isinstance(steps[i], Choice)):
                break
            events.append(StepEvent(step_index=i, step=steps[i], is_incremental=True))
            self._sent = i + 1
        return events

    def finish(self) -> tuple[list[StepEvent], CompleteEvent]:
        """Flush unsent steps from a final parse and build the completion event."""
        self._finished = True
        result = self._parse(self._buffer)
        events = [
            StepEvent(step_index=i, step=result.steps[i], is_incremental=False)
            for i in range(self._sent, len(result.steps))
        ]
        self._sent = max(self._sent, len(result.steps))
        return events, CompleteEvent(total_steps=result.total_steps, all_steps=result.steps)


async def emit_steps(
    tokens: AsyncIterator[str],
    parse: Parser,
    *,
    raw_text: bool = True,
) -> AsyncIterator[StreamEvent]:
    """Drive an IncrementalEmitter over a token stream.

    Yields a RawTextEvent per token (when raw_text is set) followed by any
    newly completed steps, then the final flush and a CompleteEvent.
    """
    emitter = IncrementalEmitter(parse)
    chunk_index = 0
    async for token in tokens:
        if not token:
            continue
        if raw_text:
            yield RawTextEvent(text=token, chunk_index=chunk_index)
        for event in emitter.feed(token):
            yield event
        chunk_index += 1

    remaining, complete = emitter.finish()
    for event in remaining:
        yield event
    yield complete
