"""
Extension point for forwarding relay frames to a genuine upstream peer.

A relay connection hands every inbound client frame to ``UpstreamChannel.send``
and writes every frame yielded by ``UpstreamChannel.frames`` back to the
client. The only implementation shipped here, ``EchoUpstreamChannel``,
acknowledges frames locally; it does not talk to any upstream.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Union

Frame = Union[str, bytes]

_CLOSED = object()


class UpstreamChannel(ABC):
    async def open(self, connection) -> None:
        """Called once the client connection is OPEN."""

    @abstractmethod
    async def send(self, frame: Frame) -> None:
        """Deliver an inbound client frame to the upstream side."""

    @abstractmethod
    def frames(self) -> AsyncIterator[Frame]:
        """Frames from the upstream side, to be delivered to the client."""

    async def close(self) -> None:
        """Release upstream resources. Must be safe to call more than once."""


ChannelFactory = Callable[[], UpstreamChannel]


class EchoUpstreamChannel(UpstreamChannel):
    """Answers every frame with a ``relay-echo`` acknowledgement."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    async def send(self, frame: Frame) -> None:
        if self._closed:
            return
        await self._queue.put(
            json.dumps(
                {
                    "type": "relay-echo",
                    "timestamp": int(time.time() * 1000),
                    "length": len(frame),
                }
            )
        )

    async def frames(self) -> AsyncIterator[Frame]:
        while True:
            frame = await self._queue.get()
            if frame is _CLOSED:
                return
            yield frame

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)
