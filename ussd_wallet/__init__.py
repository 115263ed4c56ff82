"""USSD wallet: session-driven money movement over a menu interface."""

__version__ = "0.1.0"
