"""HTTP API for the change lifecycle service."""
