"""backboard-chat: stream and track Backboard assistant conversations."""

__version__ = "0.1.0"
