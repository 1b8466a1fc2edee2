"""Pong: answers each sequenced message addressed to it with a PONG."""

from __future__ import annotations

import sys

from toyseq.messages import MessageType, TextEvent
from toyseq.ping import _Peer
from toyseq.sequencer import _console, _Endpoints, _serve

__all__ = ["PongApp", "main"]


class PongApp(_Peer):
    """Replies with a PONG command to every event addressed to it."""

    _role = "PONG"

    def on_event(self, event: TextEvent) -> None:
        """Answer an event addressed to this instance with a PONG."""
        if event.tin != self.instance_id:
            return
        self.log(f"Pong received message from Ping, seq={event.seq}")
        self.send_command(self._text_command("PONG", "PING"))
        self.log("Pong sent PONG response to Ping")

    def start(self) -> None:
        """Start listening for events."""
        self._start_listening()

    def stop(self) -> None:
        """Stop listening for events."""
        self._stop_listening()


def main(argv: list[str] | None = None) -> int:
    """Answer PINGs until SIGINT or SIGTERM."""

    def launch(ends: _Endpoints) -> PongApp:
        pong = PongApp(
            ends.cmd_addr, ends.cmd_port, 1, ends.events_addr, ends.events_port, _console
        )
        pong.start()
        pong.subscribe_type(MessageType.TEXT_EVENT, TextEvent)
        _console(
            f"pong listening for TextEvent on {ends.cmd_addr}:{ends.cmd_port}, "
            f"instance={pong.instance_id}"
        )
        return pong

    return _serve("pong", launch)


if __name__ == "__main__":
    sys.exit(main())