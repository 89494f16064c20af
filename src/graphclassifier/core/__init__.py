"""Core utilities: exception taxonomy and structured logging."""
