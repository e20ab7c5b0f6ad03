"""Tenant reporting HTTP API."""

__version__ = "1.4.0"
