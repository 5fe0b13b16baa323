"""Streaming conversation session engine for line-framed agent chat streams."""

__version__ = "0.1.0"
