"""conduit-agent: streaming conversation engine for a terminal coding assistant."""

__version__ = "0.4.0"
