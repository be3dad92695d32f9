"""Core domain logic and settings for the PTW service."""
