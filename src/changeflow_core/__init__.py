"""Changeflow Core - change lifecycle state machine and automation scheduler."""

__version__ = "1.0.0"
