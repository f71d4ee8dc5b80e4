"""In-process stand-in for the browser BroadcastChannel.

A ``BroadcastGroup`` models one browsing-context group (the tabs of one
browser profile). Messages posted on a channel are delivered on the next
loop iteration to every *other* open channel in the group with the same name.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Dict, List, Optional

from tripauth.logging import get_logger

logger = get_logger(__name__)

MessageHandler = Callable[[Any], None]


class BroadcastGroup:
    def __init__(self) -> None:
        self._channels: Dict[str, List["BroadcastChannel"]] = {}
        self._lock = threading.Lock()

    def channel(self, name: str) -> "BroadcastChannel":
        chan = BroadcastChannel(self, name)
        with self._lock:
            self._channels.setdefault(name, []).append(chan)
        return chan

    def _detach(self, chan: "BroadcastChannel") -> None:
        with self._lock:
            peers = self._channels.get(chan.name, [])
            if chan in peers:
                peers.remove(chan)

    def _peers(self, chan: "BroadcastChannel") -> List["BroadcastChannel"]:
        with self._lock:
            return [c for c in self._channels.get(chan.name, []) if c is not chan]


class BroadcastChannel:
    def __init__(self, group: BroadcastGroup, name: str) -> None:
        self.group = group
        self.name = name
        self.on_message: Optional[MessageHandler] = None
        self.closed = False

    def post(self, message: Any) -> None:
        if self.closed:
            raise RuntimeError(f"broadcast channel {self.name!r} is closed")
        loop = asyncio.get_running_loop()
        for peer in self.group._peers(self):
            loop.call_soon(peer._deliver, message)

    def _deliver(self, message: Any) -> None:
        if self.closed or self.on_message is None:
            return
        try:
            self.on_message(message)
        except Exception as exc:
            logger.error(
                "broadcast_handler_failed",
                channel=self.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.group._detach(self)
