"""Routes package for the tabvault API."""

from tabvault.web.routes import sessions

__all__ = ["sessions"]
