"""Tenant isolation and query scoping for the reporting platform."""

__version__ = "1.4.0"
