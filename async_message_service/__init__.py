"""Durable, self-healing outbound message delivery over a single channel session."""

from .core import AsyncMessageCore

__all__ = ["AsyncMessageCore"]
