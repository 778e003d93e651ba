"""signalrelay - Signal chat transport for agent dispatch."""

__version__ = "0.1.0"
