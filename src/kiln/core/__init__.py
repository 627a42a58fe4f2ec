"""Core models, errors and logging."""
