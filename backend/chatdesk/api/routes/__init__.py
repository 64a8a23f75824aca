"""
API routes module initialization.
"""
from . import sessions, messages, health

__all__ = ["sessions", "messages", "health"]
