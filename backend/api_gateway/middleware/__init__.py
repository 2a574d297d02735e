"""Middleware package for API Gateway."""

from . import logging, rate_limit, auth

__all__ = ["logging", "rate_limit", "auth"]
