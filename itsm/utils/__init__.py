"""Shared helpers: API error responses and datetime handling."""
