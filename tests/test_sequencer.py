from unittest.mock import Mock

import pytest

from toyseq.env import instance_id
from toyseq.messages import (
    MessageType,
    TextCommand,
    TextEvent,
    TopOfBookCommand,
    TopOfBookEvent,
    decode,
    encode,
    peek_msg_type,
)
from toyseq.pong import PongApp
from toyseq.sequencer import Sequencer, main

COMMAND_GROUP = ("239.255.0.2", 30002)
EVENT_GROUP = ("239.255.0.1", 30001)


def _channel(target=None):
    channel = Mock()

    def send(data):
        if target is not None:
            target(data)
        return True

    channel.send.side_effect = send
    return channel


def _sent(channel):
    return [bytes(c.args[0]) for c in channel.send.call_args_list]


def _sequencer(channel, listener=None):
    return Sequencer(*COMMAND_GROUP, *EVENT_GROUP, 1, log=lambda s: None,
                     listener=listener or Mock(), channel=channel)


def _system():
    peers = {}
    events = _channel(
        lambda d: peers["pong"].handle_datagram(MessageType.TEXT_EVENT, TextEvent, d)
    )
    commands = _channel(
        lambda d: peers["seq"].handle_datagram(MessageType.TEXT_COMMAND, TextCommand, d)
    )
    peers["seq"] = _sequencer(events)
    peers["pong"] = PongApp(*COMMAND_GROUP, 1, *EVENT_GROUP, lambda s: None,
                            listener=Mock(), channel=commands)
    return peers["seq"], events


def _send_ping(sequencer):
    command = TextCommand(text="PING", tin=instance_id("PONG"), sid=instance_id("PING"))
    return sequencer.handle_datagram(MessageType.TEXT_COMMAND, TextCommand, encode(command))


def _send_tob(sequencer, symbol, bid_price, bid_size, ask_price, ask_size):
    command = TopOfBookCommand(
        symbol=symbol, bid_price=bid_price, bid_size=bid_size,
        ask_price=ask_price, ask_size=ask_size, sid=instance_id("MD"),
    )
    return sequencer.handle_datagram(MessageType.TOB_COMMAND, TopOfBookCommand, encode(command))


def _collected(channel, cls, kind):
    return [decode(cls, data) for data in _sent(channel) if peek_msg_type(data) == kind]


def test_ping_pong_basic_communication():
    sequencer, events = _system()
    assert _send_ping(sequencer)
    text_events = _collected(events, TextEvent, MessageType.TEXT_EVENT)
    assert [(e.text, e.sid) for e in text_events] == [
        ("PING", instance_id("PING")),
        ("PONG", instance_id("PONG")),
    ]


def test_ping_pong_multiple_messages():
    sequencer, events = _system()
    assert all(_send_ping(sequencer) for _ in range(3))
    text_events = _collected(events, TextEvent, MessageType.TEXT_EVENT)
    assert [e.text for e in text_events] == ["PING", "PONG"] * 3


def test_event_sequencing():
    sequencer, events = _system()
    _send_ping(sequencer)
    first, second = _collected(events, TextEvent, MessageType.TEXT_EVENT)
    assert first.seq < second.seq
    assert first.timestamp <= second.timestamp


def test_market_data_command_sending():
    sequencer, events = _system()
    assert _send_tob(sequencer, "AAPL", 150.25, 100, 150.30, 200)
    (event,) = _collected(events, TopOfBookEvent, MessageType.TOB_EVENT)
    assert event.symbol == "AAPL"
    assert event.bid_price == pytest.approx(150.25, abs=0.001)
    assert event.bid_size == 100
    assert event.ask_price == pytest.approx(150.30, abs=0.001)
    assert event.ask_size == 200
    assert event.msg_type == MessageType.TOB_EVENT


def test_market_data_event_processing():
    sequencer, events = _system()
    symbols = ["AAPL", "GOOGL", "MSFT"]
    assert all(_send_tob(sequencer, symbol, 100.0, 50, 100.5, 75) for symbol in symbols)
    tob_events = _collected(events, TopOfBookEvent, MessageType.TOB_EVENT)
    assert len(tob_events) == 3
    assert {e.symbol for e in tob_events} == set(symbols)


def test_mixed_event_types():
    sequencer, events = _system()
    _send_ping(sequencer)
    _send_tob(sequencer, "AAPL", 150.0, 100, 150.5, 200)
    texts = [e.text for e in _collected(events, TextEvent, MessageType.TEXT_EVENT)]
    tob_events = _collected(events, TopOfBookEvent, MessageType.TOB_EVENT)
    assert "PING" in texts and "PONG" in texts
    assert tob_events[0].symbol == "AAPL"


def test_system_load_sequence_numbers_are_consecutive():
    sequencer, events = _system()
    for i in range(10):
        _send_ping(sequencer)
        _send_tob(sequencer, f"SYMBOL{i}", 100.0 + i, 100, 100.5 + i, 200)
    text_events = _collected(events, TextEvent, MessageType.TEXT_EVENT)
    tob_events = _collected(events, TopOfBookEvent, MessageType.TOB_EVENT)
    assert (len(text_events), len(tob_events)) == (20, 10)
    seqs = sorted(e.seq for e in text_events + tob_events)
    assert seqs == list(range(1, 31))


def test_text_event_carries_command_fields():
    channel = _channel()
    _sequencer(channel).on_command(TextCommand(text="hello", tin=5, sid=7))
    event = decode(TextEvent, _sent(channel)[0])
    assert (event.seq, event.text, event.tin, event.sid) == (1, "hello", 5, 7)
    assert event.timestamp > 0


def test_other_message_types_are_not_dispatched():
    channel = _channel()
    data = encode(TopOfBookCommand(symbol="AAPL"))
    assert _sequencer(channel).handle_datagram(MessageType.TEXT_COMMAND, TextCommand, data) is False
    assert _sent(channel) == []


def test_unsupported_command_raises():
    with pytest.raises(TypeError):
        _sequencer(_channel()).on_command(TextEvent(text="x"))


def test_subscription_and_lifecycle_use_listener():
    listener = Mock()
    channel = _channel()
    sequencer = _sequencer(channel, listener)
    sequencer.subscribe_type(MessageType.TEXT_COMMAND, TextCommand)
    sequencer.start()
    listener.subscribe.call_args.args[0](encode(TextCommand(text="PING")))
    sequencer.stop()
    assert (listener.start.call_count, listener.stop.call_count) == (1, 1)
    assert decode(TextEvent, _sent(channel)[0]).text == "PING"
    assert sequencer.instance_id == instance_id("SEQ")


def test_main_fails_without_environment(monkeypatch, tmp_path, capsys):
    monkeypatch.chdir(tmp_path)
    for name in ("EVENTS_ADDR", "EVENTS_PORT", "CMD_ADDR", "CMD_PORT"):
        monkeypatch.delenv(name, raising=False)
    assert main([]) == 1
    assert "sequencer error" in capsys.readouterr().err