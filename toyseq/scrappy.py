"""Scrappy: records every sequenced event to a text file."""

from __future__ import annotations

import os
import signal
import sys
import threading
from typing import IO, Any, Callable

from toyseq.endpoints import Application, EventReceiver
from toyseq.env import instance_id, load_env
from toyseq.messages import MessageType, TextEvent, TopOfBookEvent
from toyseq.multicast import MulticastReceiver

__all__ = ["format_event", "ScrappyApp", "main"]


def format_event(event: TextEvent | TopOfBookEvent) -> str:
    """Render an event as one ``|``-separated record line, without newline."""
    if isinstance(event, TextEvent):
        return f"#={event.seq}|SID={event.sid}|TIN={event.tin}|TEXT={event.text}"
    if isinstance(event, TopOfBookEvent):
        return (
            f"#={event.seq}|SID={event.sid}|TIN={event.tin}|SYMBOL={event.symbol}"
            f"|BID_PRICE={event.bid_price:g}|BID_SIZE={event.bid_size}"
            f"|ASK_PRICE={event.ask_price:g}|ASK_SIZE={event.ask_size}"
        )
    raise TypeError(f"unsupported event type: {type(event).__name__}")


class ScrappyApp(Application, EventReceiver):
    """Appends each received event to an output file."""

    def __init__(
        self,
        output_file: str | os.PathLike[str],
        address: str,
        port: int,
        *,
        log: Callable[[str], None] = print,
        listener: MulticastReceiver | None = None,
    ) -> None:
        EventReceiver.__init__(self, 0, address, port, listener=listener)
        self.output_path = output_file
        self.log = log
        self._output: IO[str] | None
        try:
            self._output = open(output_file, "a", encoding="utf-8")
        except OSError:
            print(f"Failed to open output file: {output_file}", file=sys.stderr, flush=True)
            self._output = None

    @property
    def instance_id(self) -> int:
        return instance_id("SCRAPPY")

    def on_event(self, event: TextEvent | TopOfBookEvent) -> None:
        """Write the event's record line and flush it."""
        line = format_event(event)
        if isinstance(event, TopOfBookEvent):
            self.log(
                f"Scrappy: on_event(TopOfBookEvent) seq={event.seq} sid={event.sid}"
                f" tin={event.tin} symbol={event.symbol}"
            )
        if self._output is not None:
            self._output.write(line + "\n")
            self._output.flush()

    def start(self) -> None:
        """Start listening for events."""
        self.event_listener.start()

    def stop(self) -> None:
        """Stop listening for events."""
        self.event_listener.stop()

    def close(self) -> None:
        """Close the output file."""
        if self._output is not None:
            self._output.close()
            self._output = None

    def __enter__(self) -> ScrappyApp:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
        self.close()


def _require(name: str) -> str:
    value = os.environ.get(name)
    if value is None:
        raise KeyError(f"environment variable {name} is not set")
    return value


def main(argv: list[str] | None = None) -> int:
    """Record events until SIGINT or SIGTERM.

    Arguments, all optional: output file, multicast address, port. Each
    missing one is taken from SCRAPPY_FILE, EVENTS_ADDR and EVENTS_PORT.
    """
    args = sys.argv[1:] if argv is None else list(argv)
    stop_requested = threading.Event()

    def handle_signal(signum: int, frame: Any) -> None:
        stop_requested.set()

    previous = {}
    try:
        load_env()
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, handle_signal)

        output = args[0] if len(args) > 0 else _require("SCRAPPY_FILE")
        mcast_addr = args[1] if len(args) > 1 else _require("EVENTS_ADDR")
        port = int(args[2]) if len(args) > 2 else int(_require("EVENTS_PORT"))

        scrappy = ScrappyApp(output, mcast_addr, port, log=lambda s: print(s, flush=True))
        try:
            scrappy.start()
            scrappy.subscribe_type(MessageType.TOB_EVENT, TopOfBookEvent)
            scrappy.subscribe_type(MessageType.TEXT_EVENT, TextEvent)
            print(f"scrappy listening on {mcast_addr}:{port}, writing to {output}", flush=True)
            while not stop_requested.wait(0.2):
                pass
            scrappy.stop()
        finally:
            scrappy.close()
        return 0
    except Exception as exc:
        print(f"scrappy error: {exc}", file=sys.stderr, flush=True)
        return 1
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


if __name__ == "__main__":
    sys.exit(main())