"""Couple pairing and shared entitlement backend."""

__version__ = "1.0.0"
