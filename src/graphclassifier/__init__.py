"""Graph-based rule classification for email threads."""

__version__ = "0.1.0"
