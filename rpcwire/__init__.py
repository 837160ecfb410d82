"""Typed bidirectional message channels over memory, HTTP/2 and framed byte streams."""

__version__ = "0.1.0"
__all__ = ["base", "mapped", "memory", "combined", "framing", "http"]