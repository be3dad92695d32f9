"""API routers for the PTW service."""

from . import permits

__all__ = ["permits"]
