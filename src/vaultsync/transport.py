"""
Transport adapters -- how encrypted bytes reach the other device.

The engine sees one capability: exchange(peer_id, payload) -> reply.
Everything it sends is already encrypted and signed, so a transport
only moves bytes. Real network transports (HTTP, local discovery)
plug in by implementing Transport.

LoopbackNetwork connects VaultContexts living in the same process,
which is how two devices are exercised end to end in tests.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable

from .errors import TransportFailure

logger = logging.getLogger("vaultsync.transport")

RequestHandler = Callable[[bytes], bytes]


class Transport(ABC):
    """Abstract request/response channel to a peer."""

    @abstractmethod
    def exchange(self, peer_id: str, payload: bytes) -> bytes:
        """Send ``payload`` to ``peer_id`` and return its reply.

        Raises:
            TransportFailure: reason ``unreachable`` or ``timeout``.
        """


class LoopbackNetwork:
    """In-process registry of device request handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, RequestHandler] = {}
        self._offline: set[str] = set()
        self._lock = threading.Lock()

    def attach(self, device_id: str, handler: RequestHandler) -> None:
        with self._lock:
            self._handlers[device_id] = handler
            self._offline.discard(device_id)

    def detach(self, device_id: str) -> None:
        with self._lock:
            self._handlers.pop(device_id, None)

    def set_offline(self, device_id: str, offline: bool = True) -> None:
        with self._lock:
            if offline:
                self._offline.add(device_id)
            else:
                self._offline.discard(device_id)

    def deliver(self, peer_id: str, payload: bytes) -> bytes:
        with self._lock:
            handler = self._handlers.get(peer_id)
            offline = peer_id in self._offline
        if handler is None or offline:
            raise TransportFailure(f"Device {peer_id} is unreachable", TransportFailure.UNREACHABLE)
        return handler(payload)


class LoopbackTransport(Transport):
    """Transport that delivers through a LoopbackNetwork."""

    def __init__(self, network: LoopbackNetwork):
        self.network = network

    def exchange(self, peer_id: str, payload: bytes) -> bytes:
        logger.debug("Loopback exchange with %s (%d bytes)", peer_id, len(payload))
        return self.network.deliver(peer_id, payload)


class NullTransport(Transport):
    """No network configured: every peer is unreachable."""

    def exchange(self, peer_id: str, payload: bytes) -> bytes:
        raise TransportFailure("No transport configured", TransportFailure.UNREACHABLE)
