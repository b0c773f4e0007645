"""Pairing domain services."""
