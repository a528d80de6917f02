"""Shared helpers: logging and HTTP transport."""
