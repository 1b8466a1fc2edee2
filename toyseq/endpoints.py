"""Base classes for applications on the command and event channels.

Receivers listen on a multicast group and hand each datagram of a
subscribed message type to ``on_command`` or ``on_event``. Senders
encode messages and multicast them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from toyseq.messages import DecodeError, decode, encode, peek_msg_type
from toyseq.multicast import MulticastReceiver, MulticastSender

__all__ = [
    "Application",
    "CommandReceiver",
    "EventReceiver",
    "CommandSender",
    "EventSender",
]

_log = logging.getLogger(__name__)


class Application(ABC):
    """A long-running participant with a fixed instance id."""

    @abstractmethod
    def start(self) -> None:
        """Begin work."""

    @abstractmethod
    def stop(self) -> None:
        """End work and release resources."""

    @property
    @abstractmethod
    def instance_id(self) -> int:
        """The id of this application in the instance table."""


class CommandReceiver(ABC):
    """Receives commands from a multicast group."""

    def __init__(self, address: str, port: int, *, listener: MulticastReceiver | None = None) -> None:
        self.command_listener = listener if listener is not None else MulticastReceiver(address, port)

    def subscribe_type(self, message_type: int, message_cls: type) -> None:
        """Deliver datagrams whose first field is ``message_type`` as ``message_cls``."""

        def handler(data: bytes) -> None:
            self.handle_datagram(message_type, message_cls, data)

        self.command_listener.subscribe(handler)

    def handle_datagram(self, message_type: int, message_cls: type, data: bytes) -> bool:
        """Decode and dispatch ``data`` if it is of ``message_type``; True if dispatched."""
        if peek_msg_type(data) != message_type:
            return False
        try:
            command = decode(message_cls, data)
        except DecodeError:
            _log.error("Failed to parse command from datagram")
            return False
        try:
            self.on_command(command)
        except Exception as exc:
            _log.error("CommandReceiver error: %s", exc)
            return False
        return True

    @abstractmethod
    def on_command(self, command: Any) -> None:
        """Handle one decoded command."""


class EventReceiver(ABC):
    """Receives sequenced events from a multicast group."""

    def __init__(
        self,
        receiver_id: int,
        address: str,
        port: int,
        *,
        listener: MulticastReceiver | None = None,
    ) -> None:
        self.receiver_id = receiver_id
        self.expected_seq = 1
        self.event_listener = listener if listener is not None else MulticastReceiver(address, port)

    def subscribe_type(self, message_type: int, message_cls: type) -> None:
        """Deliver datagrams whose first field is ``message_type`` as ``message_cls``."""

        def handler(data: bytes) -> None:
            self.handle_datagram(message_type, message_cls, data)

        self.event_listener.subscribe(handler)

    def handle_datagram(self, message_type: int, message_cls: type, data: bytes) -> bool:
        """Decode and dispatch ``data`` if it is of ``message_type``; True if dispatched."""
        if peek_msg_type(data) != message_type:
            return False
        self.expected_seq += 1
        try:
            event = decode(message_cls, data)
        except DecodeError:
            _log.error("Failed to parse event from datagram")
            return False
        try:
            self.on_event(event)
        except Exception as exc:
            _log.error("EventReceiver error: %s", exc)
            return False
        return True

    @abstractmethod
    def on_event(self, event: Any) -> None:
        """Handle one decoded event."""


class CommandSender:
    """Multicasts commands to the sequencer."""

    def __init__(self, address: str, port: int, ttl: int = 1, *, channel: Any = None) -> None:
        self.command_channel = channel if channel is not None else MulticastSender(address, port, ttl)

    def send_command(self, command: Any) -> bool:
        """Encode and send ``command``; True if the whole datagram went out."""
        return self.command_channel.send(encode(command))


class EventSender:
    """Multicasts sequenced events."""

    def __init__(self, address: str, port: int, ttl: int = 1, *, channel: Any = None) -> None:
        self.event_channel = channel if channel is not None else MulticastSender(address, port, ttl)

    def send_event(self, event: Any) -> bool:
        """Encode and send ``event``; True if the whole datagram went out."""
        return self.event_channel.send(encode(event))