"""Market data: a server-sent-events source and the feed that forwards quotes."""

from __future__ import annotations

import json
import logging
import math
import os
import signal
import socket
import sys
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable

from toyseq.endpoints import Application, CommandSender
from toyseq.env import instance_id, load_env
from toyseq.messages import MessageType, TopOfBookCommand

__all__ = [
    "MarketDataSource",
    "SseStatusError",
    "SseParser",
    "HttpSseMarketDataSource",
    "parse_json_tob",
    "MarketDataFeedApp",
    "main",
]

_log = logging.getLogger(__name__)

MdCallback = Callable[[str], None]

_RECV_SIZE = 4096


class MarketDataSource(ABC):
    """Produces raw top-of-book payloads and hands them to callbacks."""

    def __init__(self) -> None:
        self.callbacks: list[MdCallback] = []

    def register_callback(self, callback: MdCallback) -> None:
        """Call ``callback(data)`` for every payload."""
        self.callbacks.append(callback)

    def on_top_of_book(self, data: str) -> None:
        """Pass ``data`` to every registered callback in order."""
        for callback in self.callbacks:
            callback(data)

    @abstractmethod
    def start(self) -> None:
        """Begin producing payloads."""

    @abstractmethod
    def stop(self) -> None:
        """Stop producing payloads."""


class SseStatusError(ConnectionError):
    """Raised when the server answers with a status other than 200."""


class SseParser:
    """Incremental parser for an HTTP response carrying server-sent events."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.headers_done = False

    def feed(self, chunk: bytes) -> list[str]:
        """Add received bytes; return the payloads of completed ``data:`` lines."""
        self._buffer += chunk
        if not self.headers_done:
            end = self._buffer.find(b"\r\n\r\n")
            if end < 0:
                return []
            if self._buffer.startswith(b"HTTP/"):
                space = self._buffer.find(b" ")
                if space >= 0 and space + 4 <= len(self._buffer):
                    code = bytes(self._buffer[space + 1 : space + 4]).decode("latin-1")
                    if code != "200":
                        raise SseStatusError(f"unexpected HTTP status {code}")
            del self._buffer[: end + 4]
            self.headers_done = True

        *lines, rest = self._buffer.split(b"\n")
        self._buffer = bytearray(rest)
        payloads = []
        for line in lines:
            if line.endswith(b"\r"):
                line = line[:-1]
            if len(line) >= 5 and line[:4].lower() == b"data" and line[4:5] == b":":
                payload = line[5:]
                if payload.startswith(b" "):
                    payload = payload[1:]
                payloads.append(bytes(payload).decode("utf-8", "replace"))
        return payloads


def _close_socket(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


class HttpSseMarketDataSource(MarketDataSource):
    """Streams server-sent events over HTTP, reconnecting when the stream ends."""

    def __init__(self, host: str, port: str | int, path: str, *, retry_delay: float = 1.0) -> None:
        super().__init__()
        self.host = host
        self.port = str(port)
        self.path = path
        self.retry_delay = retry_delay
        self._lock = threading.Lock()
        self._running = False
        self._wake = threading.Event()
        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None

    def request(self) -> bytes:
        """The HTTP request sent on each connection."""
        return (
            f"GET {self.path} HTTP/1.1\r\n"
            f"Host: {self.host}:{self.port}\r\n"
            "Accept: text/event-stream\r\n"
            "Connection: keep-alive\r\n"
            "Cache-Control: no-cache\r\n\r\n"
        ).encode("utf-8")

    def start(self) -> None:
        """Start streaming on a background thread."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._wake.clear()
            self._thread = threading.Thread(target=self._run, name="md-sse", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        """Close the connection and wait for the streaming thread to end."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            sock, self._sock = self._sock, None
            thread, self._thread = self._thread, None
        self._wake.set()
        if sock is not None:
            _close_socket(sock)
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def _is_running(self) -> bool:
        with self._lock:
            return self._running

    def _connect(self) -> socket.socket | None:
        try:
            infos = socket.getaddrinfo(self.host, self.port, socket.AF_UNSPEC, socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError):
            return None
        for family, socktype, proto, _, address in infos:
            try:
                sock = socket.socket(family, socktype, proto)
            except OSError:
                continue
            try:
                sock.connect(address)
            except OSError:
                sock.close()
                continue
            return sock
        return None

    def _run(self) -> None:
        while self._is_running():
            sock = self._connect()
            if sock is None:
                self._wake.wait(self.retry_delay)
                continue
            with self._lock:
                if not self._running:
                    sock.close()
                    break
                self._sock = sock
            try:
                self._stream(sock)
            except (OSError, SseStatusError) as exc:
                _log.debug("market data stream ended: %s", exc)
            finally:
                with self._lock:
                    owned = self._sock is sock
                    if owned:
                        self._sock = None
                if owned:
                    _close_socket(sock)
            if self._is_running():
                self._wake.wait(self.retry_delay)

    def _stream(self, sock: socket.socket) -> None:
        sock.sendall(self.request())
        parser = SseParser()
        while self._is_running():
            chunk = sock.recv(_RECV_SIZE)
            if not chunk:
                return
            for payload in parser.feed(chunk):
                try:
                    self.on_top_of_book(payload)
                except Exception:
                    _log.debug("market data callback failed", exc_info=True)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"unsupported JSON constant {name}")


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    return number if math.isfinite(number) else None


def parse_json_tob(text: str, source_instance: int, target_instance: int) -> TopOfBookCommand:
    """Build a top-of-book command from a JSON quote.

    Both ``tin`` and ``sid`` are set to ``target_instance``. If a field is
    missing, of the wrong type or out of range, an empty command whose
    ``msg_type`` is UNKNOWN is returned.
    """
    empty = TopOfBookCommand(msg_type=MessageType.UNKNOWN)
    try:
        obj = json.loads(text, parse_constant=_reject_constant)
    except (ValueError, TypeError):
        return empty
    if not isinstance(obj, dict):
        return empty

    symbol = obj.get("symbol")
    if not isinstance(symbol, str):
        return empty
    bid_price = _number(obj.get("bid_price"))
    ask_price = _number(obj.get("ask_price"))
    bid_size = _number(obj.get("bid_size"))
    ask_size = _number(obj.get("ask_size"))
    timestamp = _number(obj.get("timestamp"))
    if bid_price is None or ask_price is None or timestamp is None:
        return empty
    if bid_size is None or bid_size < 0 or ask_size is None or ask_size < 0:
        return empty

    return TopOfBookCommand(
        msg_type=MessageType.TOB_COMMAND,
        tin=target_instance,
        sid=target_instance,
        symbol=symbol,
        bid_price=bid_price,
        bid_size=int(bid_size),
        ask_price=ask_price,
        ask_size=int(ask_size),
        exchange_time=max(0, int(timestamp * 1_000_000.0)),
    )


class MarketDataFeedApp(Application, CommandSender):
    """Forwards each quote from a market data source to the sequencer."""

    def __init__(
        self,
        cmd_addr: str,
        cmd_port: int,
        ttl: int,
        log: Callable[[str], None],
        source: MarketDataSource | None,
        *,
        channel: Any = None,
    ) -> None:
        CommandSender.__init__(self, cmd_addr, cmd_port, ttl, channel=channel)
        self.log = log
        self.source = source

    @property
    def instance_id(self) -> int:
        return instance_id("MD")

    def notify(self, data: str) -> None:
        """Parse a JSON quote and send it as a command."""
        command = parse_json_tob(data, self.instance_id, instance_id("SEQ"))
        self.send_command(command)

    def start(self) -> None:
        """Register with the source and start it."""
        if self.source is None:
            return
        self.source.register_callback(self.notify)
        self.source.start()

    def stop(self) -> None:
        """Stop the source."""
        if self.source is not None:
            self.source.stop()


def _require(name: str) -> str:
    value = os.environ.get(name)
    if value is None:
        raise KeyError(f"environment variable {name} is not set")
    return value


def main(argv: list[str] | None = None) -> int:
    """Run the market data feed until SIGINT or SIGTERM."""
    stop_requested = threading.Event()

    def handle_signal(signum: int, frame: Any) -> None:
        stop_requested.set()

    previous = {}
    try:
        load_env()
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, handle_signal)

        print("md: starting main", flush=True)
        source = HttpSseMarketDataSource(
            _require("MD_SOURCE_HOST"), _require("MD_SOURCE_PORT"), _require("MD_SOURCE_PATH")
        )
        cmd_addr = _require("CMD_ADDR")
        cmd_port = int(_require("CMD_PORT"))
        app = MarketDataFeedApp(cmd_addr, cmd_port, 1, lambda s: print(s, flush=True), source)
        app.start()
        while not stop_requested.wait(0.2):
            pass
        app.stop()
        return 0
    except Exception as exc:
        print(f"md error: {exc}", file=sys.stderr, flush=True)
        return 1
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


if __name__ == "__main__":
    sys.exit(main())