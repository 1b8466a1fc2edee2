"""UDP multicast sending and receiving with duplicate suppression."""

from __future__ import annotations

import logging
import os
import re
import socket
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

__all__ = ["fnv1a_64", "Deduplicator", "MulticastReceiver", "MulticastSender"]

_log = logging.getLogger(__name__)

_FNV_OFFSET = 1469598103934665603
_FNV_PRIME = 1099511628211
_MASK64 = (1 << 64) - 1
_MAX_DATAGRAM = 64 * 1024
_POLL_INTERVAL = 0.2
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")

DatagramHandler = Callable[[bytes], None]
Source = tuple


def fnv1a_64(data: bytes) -> int:
    """64-bit FNV-1a style hash of ``data``."""
    h = _FNV_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV_PRIME) & _MASK64
    return h


@dataclass
class Deduplicator:
    """Drops a datagram that repeats the previous one from the same source.

    ``window`` is in seconds.
    """

    window: float = 0.1
    enabled: bool = True
    _last_time: float | None = field(default=None, init=False, repr=False)
    _last_hash: int = field(default=0, init=False, repr=False)
    _last_len: int = field(default=0, init=False, repr=False)
    _last_source: Source | None = field(default=None, init=False, repr=False)

    def is_duplicate(self, payload: bytes, source: Source, now: float) -> bool:
        """Report whether ``payload`` repeats the last one; record it if not."""
        if not self.enabled:
            return False
        digest = fnv1a_64(payload)
        duplicate = (
            self._last_source == source
            and self._last_len == len(payload)
            and self._last_hash == digest
            and self._last_time is not None
            and now - self._last_time < self.window
        )
        if duplicate:
            return True
        self._last_time = now
        self._last_hash = digest
        self._last_len = len(payload)
        self._last_source = source
        return False


def _leading_int(text: str) -> int:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else 0


class MulticastReceiver:
    """Joins a multicast group and passes each datagram to its handlers."""

    def __init__(self, address: str, port: int) -> None:
        self.address = address
        self.port = port
        self.deduplicator = Deduplicator()
        self._handlers: list[DatagramHandler] = []
        self._lock = threading.Lock()
        self._running = threading.Event()
        self._thread: threading.Thread | None = None
        self._sock: socket.socket | None = None
        self._membership: bytes | None = None

    def subscribe(self, handler: DatagramHandler) -> None:
        """Call ``handler(data)`` for every datagram received."""
        with self._lock:
            self._handlers.append(handler)

    def dispatch(self, data: bytes, source: Source) -> bool:
        """Pass a datagram to the handlers unless it is a duplicate."""
        if self.deduplicator.is_duplicate(data, source, time.monotonic()):
            return False
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            handler(data)
        return True

    def start(self) -> None:
        """Join the group and start receiving on a background thread."""
        if self._running.is_set():
            return
        self._configure_from_env()
        self._sock = self._open_socket()
        self._running.set()
        self._thread = threading.Thread(
            target=self._run, name=f"mcast-recv-{self.address}:{self.port}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop receiving, leave the group and close the socket."""
        if not self._running.is_set():
            return
        self._running.clear()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._sock is not None:
            if self._membership is not None:
                try:
                    self._sock.setsockopt(socket.IPPROTO_IP, socket.IP_DROP_MEMBERSHIP, self._membership)
                except OSError:
                    pass
            self._sock.close()
            self._sock = None
            self._membership = None

    def __enter__(self) -> MulticastReceiver:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _configure_from_env(self) -> None:
        dedup = os.environ.get("MCAST_DEDUP")
        if dedup is not None:
            self.deduplicator.enabled = not dedup.startswith("0")
        window = os.environ.get("MCAST_DEDUP_MS")
        if window is not None:
            ms = _leading_int(window)
            if 0 < ms < 10000:
                self.deduplicator.window = ms / 1000.0

    def _open_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError:
                    pass
            # Binding to the group on macOS avoids duplicate delivery.
            bind_host = self.address if sys.platform == "darwin" else ""
            sock.bind((bind_host, self.port))
            interface = os.environ.get("MCAST_IF_ADDR") or "0.0.0.0"
            membership = socket.inet_aton(self.address) + socket.inet_aton(interface)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
            sock.settimeout(_POLL_INTERVAL)
        except OSError:
            sock.close()
            raise
        self._membership = membership
        return sock

    def _run(self) -> None:
        sock = self._sock
        assert sock is not None
        while self._running.is_set():
            try:
                data, source = sock.recvfrom(_MAX_DATAGRAM)
            except TimeoutError:
                continue
            except OSError:
                if not self._running.is_set():
                    break
                continue
            if not data:
                continue
            try:
                self.dispatch(data, source)
            except Exception:
                _log.exception("datagram handler failed")


class MulticastSender:
    """Sends datagrams to one multicast group and port."""

    def __init__(self, address: str, port: int, ttl: int = 1) -> None:
        if not 0 <= ttl <= 255:
            raise ValueError(f"TTL out of range: {ttl}")
        if not 0 <= port <= 65535:
            raise ValueError(f"port out of range: {port}")
        try:
            socket.inet_pton(socket.AF_INET, address)
        except OSError:
            raise ValueError(f"Invalid multicast address: {address!r}") from None
        self.address = address
        self.port = port
        self.ttl = ttl
        self._sock: socket.socket | None = self._open_socket()

    def _open_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self.ttl)
            interface = os.environ.get("MCAST_IF_ADDR")
            if interface:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_IF, socket.inet_aton(interface))
            # Loopback is off by default to avoid duplicate deliveries.
            loop = 1 if os.environ.get("MCAST_LOOPBACK", "").startswith("1") else 0
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, loop)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError:
            sock.close()
            raise
        return sock

    def send(self, data: bytes, ttl: int | None = None) -> bool:
        """Send one datagram; True if all of it was sent."""
        sock = self._sock
        if sock is None:
            return False
        ttl = self.ttl if ttl is None else ttl
        override = ttl != self.ttl
        if override:
            try:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, ttl)
            except (OSError, OverflowError):
                _log.error("Failed to set TTL for send")
                return False
        payload = bytes(data)
        try:
            sent = sock.sendto(payload, (self.address, self.port))
        except OSError as exc:
            _log.error("Failed to send multicast message: %s", exc)
            sent = -1
        finally:
            if override:
                try:
                    sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self.ttl)
                except OSError:
                    _log.error("Failed to restore TTL after send")
        return sent == len(payload)

    def close(self) -> None:
        """Close the socket; later sends return False."""
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> MulticastSender:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()