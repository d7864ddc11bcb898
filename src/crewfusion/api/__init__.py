"""HTTP API for the agent crew."""

from .server import create_app

__all__ = ["create_app"]
