"""API routers for Changeflow Core."""

from . import automation, changes

__all__ = ["automation", "changes"]
