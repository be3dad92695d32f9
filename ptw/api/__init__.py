"""HTTP API for the PTW lifecycle service."""
