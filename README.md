# toyseq

A small total-order sequencer that works over UDP multicast. The package also
has a few applications that talk through it.

Applications send *commands* to a command multicast group. The sequencer
receives each command and stamps it with the next sequence number, starting
at 1, and a microsecond wall-clock timestamp. It then republishes the command
as an *event* on the events multicast group. Every listener sees the same
events in the same order.

Messages use the protobuf wire format. The first field of every message is its
message type. Receivers read that field first and decode only the datagrams
whose type they subscribed to.

## Installation

```
pip install .
```

The package needs only the standard library at runtime.

## Commands

| Command            | What it does                                                                          |
|--------------------|---------------------------------------------------------------------------------------|
| `toyseq-sequencer` | Receives text and top-of-book commands and publishes them as sequenced events         |
| `toyseq-ping`      | Sends one `PING` text command addressed to pong, then listens for text events         |
| `toyseq-pong`      | Answers every text event addressed to it with a `PONG` command addressed to ping      |
| `toyseq-scrappy`   | Appends every text and top-of-book event to a file                                    |
| `toyseq-md`        | Reads a Server-Sent Events stream of top-of-book JSON and sends each quote as a command |

Each command runs until SIGINT or SIGTERM and then stops cleanly. If a required
environment variable is missing, the command prints `<name> error: ...` to
stderr and exits with status 1.

### Configuration

Each command first loads a `.env` file from the working directory if one
exists. Every `KEY=value` line is set in the environment and overwrites any
value already there. Empty lines, lines that start with `#` and lines without
`=` are skipped.

| Variable                     | Used by                         | Meaning                                          |
|------------------------------|---------------------------------|--------------------------------------------------|
| `CMD_ADDR`, `CMD_PORT`       | sequencer, ping, pong, md       | multicast group and port for commands            |
| `EVENTS_ADDR`, `EVENTS_PORT` | sequencer, ping, pong, scrappy  | multicast group and port for events              |
| `SCRAPPY_FILE`               | scrappy                         | output file, which is appended to                |
| `MD_SOURCE_HOST`, `MD_SOURCE_PORT`, `MD_SOURCE_PATH` | md      | HTTP endpoint of the SSE market-data stream      |
| `MCAST_IF_ADDR`              | senders and receivers           | local interface address for multicast            |
| `MCAST_LOOPBACK`             | senders                         | a value starting with `1` enables multicast loopback (off by default) |
| `MCAST_DEDUP`                | receivers                       | a value starting with `0` turns off duplicate-datagram suppression |
| `MCAST_DEDUP_MS`             | receivers                       | duplicate window in ms, 1–9999 (default 100)     |

Multicast loopback is off by default. If all the programs run on one host,
set `MCAST_LOOPBACK=1` so that they receive each other's datagrams.

Example `.env`:

```
CMD_ADDR=239.255.0.2
CMD_PORT=30002
EVENTS_ADDR=239.255.0.1
EVENTS_PORT=30001
SCRAPPY_FILE=events.txt
MD_SOURCE_HOST=127.0.0.1
MD_SOURCE_PORT=8000
MD_SOURCE_PATH=/stream
MCAST_LOOPBACK=1
```

`toyseq-scrappy` also takes optional positional arguments that override the
environment. In order, they are the output file, the events address and the
events port:

```
toyseq-scrappy events.txt 239.255.0.1 30001
```

### A ping/pong round trip

Run each of these in its own terminal:

```
toyseq-sequencer
toyseq-scrappy
toyseq-pong
toyseq-ping
```

The capture file then holds one line per sequenced event:

```
#=1|SID=2|TIN=3|TEXT=PING
#=2|SID=3|TIN=2|TEXT=PONG
```

Top-of-book events from `toyseq-md` are written like this:

```
#=3|SID=0|TIN=0|SYMBOL=AAPL|BID_PRICE=150.25|BID_SIZE=100|ASK_PRICE=150.3|ASK_SIZE=200
```

`toyseq.scrappy.format_event(event)` returns such a line without the newline.

### Instance identifiers

| Name      | Id |
|-----------|----|
| `SEQ`     | 0  |
| `SCRAPPY` | 1  |
| `PING`    | 2  |
| `PONG`    | 3  |
| `MD`      | 4  |

`toyseq.env.instance_id(name)` returns these values. It raises `KeyError` for
an unknown name.

## Market data feed

`toyseq-md` connects to an HTTP endpoint that serves `text/event-stream`. It
takes each `data:` line as one JSON object:

```json
{"symbol": "AAPL", "bid_price": 150.25, "bid_size": 100,
 "ask_price": 150.30, "ask_size": 200, "timestamp": 1700000000.5}
```

`toyseq.marketdata.parse_json_tob` converts the timestamp from seconds to
microseconds. It sets both `tin` and `sid` of the command to the sequencer's
id. The following cases give an empty command whose `msg_type` is `UNKNOWN`:

- a field is missing;
- a field has the wrong type;
- a size is negative.

The sequencer ignores such a command. If a connection cannot be made, the
stream ends, or the server answers with a status other than 200, the source
waits one second and reconnects.

## Using the library

```python
from toyseq.marketdata import parse_json_tob
from toyseq.messages import MessageType, TopOfBookCommand, decode, encode, peek_msg_type

cmd = parse_json_tob(
    '{"symbol": "MSFT", "bid_price": 1.0, "bid_size": 5,'
    ' "ask_price": 1.5, "ask_size": 7, "timestamp": 2.0}',
    4,
    0,
)
data = encode(cmd)
assert peek_msg_type(data) == MessageType.TOB_COMMAND
assert decode(TopOfBookCommand, data).symbol == "MSFT"
```

- `toyseq.messages` defines the message classes `TextCommand`, `TextEvent`,
  `TopOfBookCommand` and `TopOfBookEvent`. For malformed input, `decode`
  raises `DecodeError`, which is a subclass of `ValueError`.
- `toyseq.multicast` provides `MulticastSender`, `MulticastReceiver` and the
  `Deduplicator` that receivers use to drop immediate repeats of a datagram.
- `toyseq.endpoints` holds the base classes for applications:
  - `CommandReceiver` and `EventReceiver`, whose `subscribe_type` routes
    datagrams to `on_command` or `on_event`;
  - `CommandSender` and `EventSender`.
- `toyseq.command_bus.CommandBus` is an in-process publish/subscribe bus
  keyed by command type. Each handler receives the command and the sender id.

## What it does not do

- Delivery is plain UDP multicast. Lost events are not retransmitted, and
  receivers do not detect gaps in sequence numbers.
- No market-data server is included. `toyseq-md` needs an external HTTP
  endpoint that serves Server-Sent Events.
- No harness is included for starting and stopping the applications
  together. Each command is run on its own.

## Tests

```
pip install .[test]
pytest
```