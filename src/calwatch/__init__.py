"""Calendar watch-channel lifecycle and change reconciliation service."""

__version__ = "0.1.0"
