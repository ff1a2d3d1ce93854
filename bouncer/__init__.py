"""Impersonation detection and response pipeline."""

__version__ = "0.1.0"
