"""Activation and session token services."""

__version__ = "0.1.0"
