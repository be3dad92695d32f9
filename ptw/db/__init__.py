"""Database layer for the PTW service."""
