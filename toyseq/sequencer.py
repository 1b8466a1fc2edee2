"""The sequencer: stamps each command with a sequence number and republishes it."""

from __future__ import annotations

import os
import signal
import sys
import threading
import time
from typing import Any, Callable, NamedTuple

from toyseq.endpoints import Application, CommandReceiver, EventSender
from toyseq.env import instance_id, load_env
from toyseq.messages import (
    MessageType,
    TextCommand,
    TopOfBookCommand,
    text_event_from_command,
    tob_event_from_command,
)
from toyseq.multicast import MulticastReceiver

__all__ = ["Sequencer", "main"]

_EVENT_BUILDERS = {
    TextCommand: text_event_from_command,
    TopOfBookCommand: tob_event_from_command,
}


def _now_us() -> int:
    return time.time_ns() // 1000


class Sequencer(Application, EventSender, CommandReceiver):
    """Turns commands into sequenced events; sequence numbers start at 1."""

    def __init__(
        self,
        cmd_addr: str,
        cmd_port: int,
        events_addr: str,
        events_port: int,
        ttl: int = 1,
        *,
        log: Callable[[str], None] = print,
        listener: MulticastReceiver | None = None,
        channel: Any = None,
    ) -> None:
        EventSender.__init__(self, events_addr, events_port, ttl, channel=channel)
        CommandReceiver.__init__(self, cmd_addr, cmd_port, listener=listener)
        self.log = log
        self._seq_lock = threading.Lock()
        self._next_seq = 1

    @property
    def instance_id(self) -> int:
        return instance_id("SEQ")

    def _take_seq(self) -> int:
        with self._seq_lock:
            seq = self._next_seq
            self._next_seq += 1
        return seq

    def on_command(self, command: Any) -> None:
        """Sequence ``command`` and publish the resulting event."""
        build = _EVENT_BUILDERS.get(type(command))
        if build is None:
            raise TypeError(f"unsupported command type: {type(command).__name__}")
        self.log(f"Sequencer received {type(command).__name__}: {command}")
        self.send_event(build(command, self._take_seq(), command.sid, _now_us()))

    def start(self) -> None:
        """Start listening for commands."""
        self.command_listener.start()

    def stop(self) -> None:
        """Stop listening for commands."""
        self.command_listener.stop()


class _Endpoints(NamedTuple):
    events_addr: str
    events_port: int
    cmd_addr: str
    cmd_port: int

    @classmethod
    def from_env(cls) -> "_Endpoints":
        return cls(
            _require("EVENTS_ADDR"),
            int(_require("EVENTS_PORT")),
            _require("CMD_ADDR"),
            int(_require("CMD_PORT")),
        )


def _require(name: str) -> str:
    value = os.environ.get(name)
    if value is None:
        raise KeyError(f"environment variable {name} is not set")
    return value


def _console(line: str) -> None:
    print(line, flush=True)


def _serve(name: str, launch: Callable[[_Endpoints], Application]) -> int:
    """Launch an application from the environment and run it until SIGINT or SIGTERM."""
    stop_requested = threading.Event()

    def handle_signal(signum: int, frame: Any) -> None:
        stop_requested.set()

    previous = {}
    try:
        load_env()
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, handle_signal)
        app = launch(_Endpoints.from_env())
        while not stop_requested.wait(0.2):
            pass
        app.stop()
        return 0
    except Exception as exc:
        print(f"{name} error: {exc}", file=sys.stderr, flush=True)
        return 1
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def main(argv: list[str] | None = None) -> int:
    """Run the sequencer until SIGINT or SIGTERM."""

    def launch(ends: _Endpoints) -> Sequencer:
        sequencer = Sequencer(
            ends.cmd_addr, ends.cmd_port, ends.events_addr, ends.events_port, 1, log=_console
        )
        sequencer.subscribe_type(MessageType.TEXT_COMMAND, TextCommand)
        sequencer.subscribe_type(MessageType.TOB_COMMAND, TopOfBookCommand)
        sequencer.start()
        _console(
            f"sequencer started, listening for commands on {ends.cmd_addr}:{ends.cmd_port}"
            f" and publishing events to {ends.events_addr}:{ends.events_port}"
        )
        return sequencer

    return _serve("sequencer", launch)


if __name__ == "__main__":
    sys.exit(main())