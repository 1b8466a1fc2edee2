import json
import queue
import socket
import threading

import pytest

from toyseq.env import instance_id
from toyseq.marketdata import (
    HttpSseMarketDataSource,
    MarketDataFeedApp,
    MarketDataSource,
    SseParser,
    SseStatusError,
    main,
    parse_json_tob,
)
from toyseq.messages import MessageType, TopOfBookCommand, decode

EMPTY = TopOfBookCommand(msg_type=MessageType.UNKNOWN)


class FakeChannel:
    def __init__(self):
        self.sent = []

    def send(self, data, ttl=None):
        self.sent.append(bytes(data))
        return True


class FakeSource(MarketDataSource):
    def __init__(self):
        super().__init__()
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True


def quote(**overrides):
    body = {
        "symbol": "AAPL",
        "bid_price": 150.25,
        "ask_price": 150.30,
        "bid_size": 100,
        "ask_size": 200,
        "timestamp": 2.0,
    }
    body.update(overrides)
    return json.dumps(body)


def test_callbacks_called_in_order():
    source = HttpSseMarketDataSource("127.0.0.1", "8000", "/stream")
    calls = []
    source.register_callback(lambda d: calls.append(("a", d)))
    source.register_callback(lambda d: calls.append(("b", d)))
    source.on_top_of_book("x")
    assert calls == [("a", "x"), ("b", "x")]


def test_parse_json_tob_valid():
    cmd = parse_json_tob(quote(), 4, 0)
    assert cmd.msg_type == MessageType.TOB_COMMAND
    assert cmd.symbol == "AAPL"
    assert cmd.bid_price == 150.25
    assert cmd.ask_price == 150.30
    assert cmd.bid_size == 100
    assert cmd.ask_size == 200
    assert cmd.exchange_time == 2000000


def test_parse_json_tob_uses_target_for_tin_and_sid():
    cmd = parse_json_tob(quote(), 4, 9)
    assert (cmd.tin, cmd.sid) == (9, 9)


def test_parse_json_tob_truncates_sizes():
    cmd = parse_json_tob(quote(bid_size=10.9), 4, 0)
    assert cmd.bid_size == 10


@pytest.mark.parametrize(
    "text",
    [
        quote(symbol=5),
        quote(bid_price="1.0"),
        quote(ask_price=None),
        quote(bid_size=-1),
        quote(ask_size=-0.5),
        quote(timestamp=True),
        json.dumps({"symbol": "AAPL"}),
        "not json",
        "[1, 2, 3]",
        '{"symbol": "AAPL", "bid_price": NaN, "ask_price": 1, "bid_size": 1, "ask_size": 1, "timestamp": 1}',
    ],
)
def test_parse_json_tob_rejects_bad_input(text):
    assert parse_json_tob(text, 4, 0) == EMPTY


def test_sse_parser_extracts_data_lines():
    parser = SseParser()
    out = parser.feed(b"HTTP/1.1 200 OK\r\nContent-Type: text/event-stream\r\n\r\ndata: one\r\nevent: x\ndata:two\n")
    assert out == ["one", "two"]
    assert parser.headers_done


def test_sse_parser_waits_for_headers_and_full_lines():
    parser = SseParser()
    assert parser.feed(b"HTTP/1.1 200 OK\r\n") == []
    assert parser.feed(b"\r\nDATA: par") == []
    assert parser.feed(b"tial\nDaTa:x") == ["partial"]
    assert parser.feed(b"\n") == ["x"]


def test_sse_parser_ignores_short_and_other_lines():
    parser = SseParser()
    out = parser.feed(b"HTTP/1.1 200 OK\r\n\r\ndata\n: comment\ndatum: y\ndata: z\n")
    assert out == ["z"]


def test_sse_parser_rejects_non_200():
    parser = SseParser()
    with pytest.raises(SseStatusError):
        parser.feed(b"HTTP/1.1 404 Not Found\r\n\r\n")


def test_feed_notify_sends_command():
    channel = FakeChannel()
    app = MarketDataFeedApp("239.255.0.2", 30002, 1, print, None, channel=channel)
    text = quote(symbol="MSFT")
    app.notify(text)
    assert len(channel.sent) == 1
    assert decode(TopOfBookCommand, channel.sent[0]) == parse_json_tob(text, instance_id("MD"), instance_id("SEQ"))


def test_feed_instance_id():
    app = MarketDataFeedApp("239.255.0.2", 30002, 1, print, None, channel=FakeChannel())
    assert app.instance_id == instance_id("MD")


def test_feed_start_wires_source():
    channel = FakeChannel()
    source = FakeSource()
    app = MarketDataFeedApp("239.255.0.2", 30002, 1, print, source, channel=channel)
    app.start()
    assert source.started
    source.on_top_of_book(quote(symbol="GOOGL"))
    assert decode(TopOfBookCommand, channel.sent[0]).symbol == "GOOGL"
    app.stop()
    assert source.stopped


def test_http_source_streams_payloads():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    port = server.getsockname()[1]
    requests = []
    done = threading.Event()
    payload = quote(symbol="AAPL")

    def serve():
        conn, _ = server.accept()
        with conn:
            data = b""
            while b"\r\n\r\n" not in data:
                chunk = conn.recv(1024)
                if not chunk:
                    break
                data += chunk
            requests.append(data)
            conn.sendall(b"HTTP/1.1 200 OK\r\nContent-Type: text/event-stream\r\n\r\n")
            conn.sendall(b"data: " + payload.encode() + b"\n\n")
            done.wait(5)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    received = queue.Queue()
    source = HttpSseMarketDataSource("127.0.0.1", str(port), "/stream")
    source.register_callback(received.put)
    source.start()
    try:
        assert received.get(timeout=5) == payload
    finally:
        source.stop()
        done.set()
        thread.join(5)
        server.close()
    assert requests[0].startswith(b"GET /stream HTTP/1.1\r\n")
    assert b"Accept: text/event-stream\r\n" in requests[0]


def test_main_fails_without_environment(monkeypatch, tmp_path, capsys):
    monkeypatch.chdir(tmp_path)
    for name in ("MD_SOURCE_HOST", "MD_SOURCE_PORT", "MD_SOURCE_PATH", "CMD_ADDR", "CMD_PORT"):
        monkeypatch.delenv(name, raising=False)
    assert main([]) == 1
    assert "md error" in capsys.readouterr().err