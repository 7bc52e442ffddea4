"""Circle check-in core: check-in transactions and notification fan-out."""

__version__ = "0.1.0"
