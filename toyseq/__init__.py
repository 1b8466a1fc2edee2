"""UDP multicast sequencer, wire messages, and ping/pong, market-data and event-capture applications."""

__version__ = "0.1.0"