"""Ping: sends a PING to pong through the sequencer and watches the events."""

from __future__ import annotations

import sys
from typing import Any, Callable

from toyseq.endpoints import Application, CommandSender, EventReceiver
from toyseq.env import instance_id
from toyseq.messages import MessageType, TextCommand, TextEvent
from toyseq.multicast import MulticastReceiver
from toyseq.sequencer import _console, _Endpoints, _serve

__all__ = ["PingApp", "main"]


class _Peer(Application, CommandSender, EventReceiver):
    """An application that sends commands and listens for events under a fixed role."""

    _role = ""

    def __init__(
        self,
        cmd_addr: str,
        cmd_port: int,
        ttl: int,
        events_addr: str,
        events_port: int,
        log: Callable[[str], None] = print,
        *,
        listener: MulticastReceiver | None = None,
        channel: Any = None,
    ) -> None:
        CommandSender.__init__(self, cmd_addr, cmd_port, ttl, channel=channel)
        EventReceiver.__init__(
            self, instance_id(self._role), events_addr, events_port, listener=listener
        )
        self.log = log

    @property
    def instance_id(self) -> int:
        return instance_id(self._role)

    def _text_command(self, text: str, target: str) -> TextCommand:
        return TextCommand(
            msg_type=MessageType.TEXT_COMMAND,
            text=text,
            tin=instance_id(target),
            sid=self.instance_id,
        )

    def _start_listening(self) -> None:
        self.event_listener.start()

    def _stop_listening(self) -> None:
        self.event_listener.stop()


class PingApp(_Peer):
    """Sends PING commands and logs acknowledgements addressed to it."""

    _role = "PING"

    def on_event(self, event: TextEvent) -> None:
        """Log a sequenced PING addressed to this instance."""
        if event.tin == self.instance_id and event.text == "PING":
            self.log(f"Ping received ack for sequenced PING, seq={event.seq}")

    def send_ping(self) -> bool:
        """Send a PING command addressed to pong."""
        return self.send_command(self._text_command("PING", "PONG"))

    def start(self) -> None:
        """Start listening for events."""
        self._start_listening()

    def stop(self) -> None:
        """Stop listening for events."""
        self._stop_listening()


def main(argv: list[str] | None = None) -> int:
    """Send one PING, then listen until SIGINT or SIGTERM."""

    def launch(ends: _Endpoints) -> PingApp:
        ping = PingApp(
            ends.cmd_addr, ends.cmd_port, 1, ends.events_addr, ends.events_port, _console
        )
        ping.subscribe_type(MessageType.TEXT_EVENT, TextEvent)
        ping.start()
        _console(
            f"ping sending commands to {ends.cmd_addr}:{ends.cmd_port}, listening for events on "
            f"{ends.events_addr}:{ends.events_port}"
        )
        ping.send_ping()
        return ping

    return _serve("ping", launch)


if __name__ == "__main__":
    sys.exit(main())