"""
Single-producer, multi-consumer frame broadcast.

The capture thread publishes into a FrameChannel; every HTTP connection
reads through its own Subscription. The channel keeps the last `capacity`
frames, each tagged with a sequence number, and every subscription keeps
its own cursor into that sequence.

Publishing only appends and notifies, so a slow viewer can never stall
capture. A subscription that falls more than `capacity` frames behind
skips ahead to the newest frame and counts the skipped frames in `lagged`.
"""

import threading
import weakref
from collections import deque
from typing import Iterator, Optional


class ChannelClosed(Exception):
    """Raised by Subscription.recv once the channel or subscription is closed."""
    pass


class FrameChannel:
    """
    Bounded broadcast buffer of JPEG frames.

    Usage:
        channel = FrameChannel(capacity=10)
        sub = channel.subscribe()

        # producer thread
        channel.publish(jpeg_bytes)

        # consumer thread
        frame = sub.recv()
    """

    def __init__(self, capacity: int = 10):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._frames = deque(maxlen=capacity)  # (seq, frame)
        self._next_seq = 0
        self._cond = threading.Condition()
        self._closed = False
        self._subscribers = weakref.WeakSet()
        self._published = 0

    def publish(self, frame: bytes) -> int:
        """
        Append a frame and wake waiting subscribers. Never blocks on consumers.

        Returns:
            Number of live subscriptions at publish time

        Raises:
            ChannelClosed: If close() was already called
        """
        with self._cond:
            if self._closed:
                raise ChannelClosed("publish on closed channel")
            self._frames.append((self._next_seq, frame))
            self._next_seq += 1
            self._published += 1
            self._cond.notify_all()
            return len(self._subscribers)

    def subscribe(self) -> "Subscription":
        """
        Create an independent subscription starting after the newest frame.

        Raises:
            ChannelClosed: If the channel is closed
        """
        with self._cond:
            if self._closed:
                raise ChannelClosed("subscribe on closed channel")
            sub = Subscription(self, self._next_seq)
            self._subscribers.add(sub)
            return sub

    def close(self):
        """Stop the channel. Subscribers drain what is buffered, then see ChannelClosed."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        with self._cond:
            return len(self._subscribers)

    def get_stats(self) -> dict:
        with self._cond:
            return {
                "capacity": self.capacity,
                "buffered": len(self._frames),
                "published": self._published,
                "subscribers": len(self._subscribers),
                "closed": self._closed,
            }

    def _detach(self, sub: "Subscription"):
        with self._cond:
            self._subscribers.discard(sub)
            self._cond.notify_all()


class Subscription:
    """A consumer cursor into a FrameChannel. Obtain via FrameChannel.subscribe()."""

    def __init__(self, channel: FrameChannel, cursor: int):
        self._channel = channel
        self._cursor = cursor
        self._closed = False
        self.lagged = 0
        self.received = 0

    def recv(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Wait for the next frame.

        Args:
            timeout: Max seconds to wait, None to wait until a frame arrives

        Returns:
            Frame bytes, or None if the timeout expired

        Raises:
            ChannelClosed: The subscription was closed, or the channel was
                closed and every buffered frame has been delivered
        """
        channel = self._channel
        with channel._cond:
            channel._cond.wait_for(
                lambda: self._closed or channel._closed or channel._next_seq > self._cursor,
                timeout=timeout,
            )
            if self._closed:
                raise ChannelClosed("subscription closed")
            if channel._next_seq > self._cursor:
                return self._take()
            if channel._closed:
                raise ChannelClosed("channel closed")
            return None

    def _take(self) -> bytes:
        frames = self._channel._frames
        oldest = frames[0][0]
        if self._cursor < oldest:
            # Fell out of the ring: skip to the newest frame
            newest = frames[-1][0]
            self.lagged += newest - self._cursor
            self._cursor = newest
        _, frame = frames[self._cursor - oldest]
        self._cursor += 1
        self.received += 1
        return frame

    def close(self):
        """Detach from the channel. A blocked recv() raises ChannelClosed."""
        if self._closed:
            return
        self._closed = True
        self._channel._detach(self)

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[bytes]:
        """Yield frames until the channel or subscription is closed."""
        while True:
            try:
                yield self.recv()
            except ChannelClosed:
                return

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
