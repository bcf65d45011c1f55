"""Directory administration console with scheduled vacation account handling."""

__version__ = "0.1.0"
