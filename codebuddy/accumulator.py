"""Fold a streamed Messages API response into one completed turn.

The accumulator consumes the typed events produced by
``client.messages.create(..., stream=True)`` and returns a ``TurnResult``.
While it runs it can republish every text / partial-JSON fragment on a
``FragmentChannel`` so a display thread can print the reply as it arrives.
"""

import json
import logging
import queue
from dataclasses import dataclass, field

import anthropic

from .errors import ProtocolError, StreamError

logger = logging.getLogger(__name__)


@dataclass
class ContentBlock:
    """One finalized text or tool_use block of a model turn."""

    type: str
    text: str
    index: int = -1
    tool_name: str | None = None
    tool_id: str | None = None

    def to_param(self) -> dict:
        """Return the block as a Messages API content param."""
        if self.type == "tool_use":
            return {
                "type": "tool_use",
                "id": self.tool_id,
                "name": self.tool_name,
                "input": json.loads(self.text) if self.text else {},
            }
        return {"type": "text", "text": self.text}


@dataclass
class TurnResult:
    """Everything the model produced for one request."""

    content_blocks: list[ContentBlock] = field(default_factory=list)
    stop_reason: str | None = None
    stop_sequence: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0

    def text(self) -> str:
        return "".join(b.text for b in self.content_blocks if b.type == "text")


@dataclass
class Fragment:
    """A single incremental piece of block content, for live display."""

    text: str
    index: int = -1


_CLOSED = object()


class FragmentChannel:
    """Ordered, closable hand-off of fragments between two threads.

    The producer calls ``publish()`` then ``close()`` exactly once; the
    consumer iterates until the channel is closed.
    """

    def __init__(self):
        self._queue: queue.Queue = queue.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, fragment: Fragment) -> None:
        if self._closed:
            raise RuntimeError("publish on closed fragment channel")
        self._queue.put(fragment)

    def close(self) -> None:
        if self._closed:
            raise RuntimeError("fragment channel already closed")
        self._closed = True
        self._queue.put(_CLOSED)

    def __iter__(self):
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item


def _event_json(event) -> str:
    if hasattr(event, "to_json"):
        return event.to_json(indent=None)
    return repr(event)


class ResponseAccumulator:
    """Drive one streaming request to completion."""

    def __init__(self, client, debug_logger: logging.Logger | None = None):
        self.client = client
        self.debug_logger = debug_logger or logger

    def complete(
        self, request: dict, fragments: FragmentChannel | None = None
    ) -> TurnResult:
        """Send ``request`` in streaming mode and return the completed turn.

        ``fragments``, when given, receives every delta fragment and is
        closed before this method returns or raises.
        """
        request = {**request, "stream": True}
        try:
            return self._complete(request, fragments)
        finally:
            if fragments is not None:
                fragments.close()

    def _complete(self, request: dict, fragments: FragmentChannel | None) -> TurnResult:
        result = TurnResult()
        blocks: list[ContentBlock] = []

        block_type: str | None = None
        block_index = -1
        tool_name: str | None = None
        tool_id: str | None = None
        parts: list[str] = []

        try:
            with self.client.messages.create(**request) as stream:
                for event in stream:
                    if self.debug_logger.isEnabledFor(logging.DEBUG):
                        self.debug_logger.debug("message event %s", _event_json(event))

                    etype = getattr(event, "type", None)
                    if etype == "ping":
                        continue
                    elif etype == "message_start":
                        msg = event.message
                        result.stop_reason = msg.stop_reason
                        result.stop_sequence = msg.stop_sequence
                        if msg.usage is not None:
                            result.input_tokens = msg.usage.input_tokens or 0
                            result.output_tokens = msg.usage.output_tokens or 0
                    elif etype == "content_block_start":
                        cb = event.content_block
                        block_type = cb.type
                        block_index = event.index
                        tool_name = getattr(cb, "name", None)
                        tool_id = getattr(cb, "id", None)
                        parts = []
                        if getattr(cb, "text", None):
                            parts.append(cb.text)
                    elif etype == "content_block_delta":
                        text = getattr(event.delta, "text", None) or ""
                        partial_json = getattr(event.delta, "partial_json", None) or ""
                        parts.append(text)
                        parts.append(partial_json)
                        if fragments is not None:
                            fragments.publish(
                                Fragment(text=text or partial_json, index=event.index)
                            )
                    elif etype == "content_block_stop":
                        blocks.append(
                            ContentBlock(
                                type=block_type,
                                text="".join(parts),
                                index=block_index,
                                tool_name=tool_name,
                                tool_id=tool_id,
                            )
                        )
                        block_type = None
                        block_index = -1
                        tool_name = None
                        tool_id = None
                        parts = []
                    elif etype == "message_delta":
                        result.stop_reason = event.delta.stop_reason
                        result.stop_sequence = event.delta.stop_sequence
                        if event.usage is not None:
                            result.output_tokens = event.usage.output_tokens
                    elif etype == "message_stop":
                        pass
                    elif etype == "error":
                        err = getattr(event, "error", None)
                        message = getattr(err, "message", None) or str(err)
                        raise StreamError(f"model stream error: {message}")
                    else:
                        # The SDK Stream skips SSE events it does not recognize, so
                        # only clients that pass raw events through reach this.
                        raise ProtocolError(f"unexpected event type: {etype!r}")
        except anthropic.APIError as e:
            raise StreamError(f"model request failed: {e}") from e

        result.content_blocks = blocks
        return result
