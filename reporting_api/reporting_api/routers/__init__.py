"""API router modules for the reporting service."""

from __future__ import annotations

from reporting_api.routers import admin, auth, bundles, endpoints, export, filters, health, pricing, usage

__all__ = [
    "admin",
    "auth",
    "bundles",
    "endpoints",
    "export",
    "filters",
    "health",
    "pricing",
    "usage",
]
