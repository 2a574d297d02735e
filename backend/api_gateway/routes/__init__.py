"""Routes package for API Gateway."""

from . import audit, auth, delegations, health, invoices

__all__ = ["audit", "auth", "delegations", "health", "invoices"]
