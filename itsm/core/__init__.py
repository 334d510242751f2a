"""Core building blocks shared across layers (exception hierarchy)."""
