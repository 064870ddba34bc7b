"""HTTP API for the token usage service."""

from token_usage.api.app import create_app

__all__ = ["create_app"]
