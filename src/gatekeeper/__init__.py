"""Gatekeeper: suspicious-account detection and verification for chat communities."""

__version__ = "0.1.0"
