"""Versioned single-page-application proxy with a local fetch-through cache."""

__version__ = "0.1.0"
