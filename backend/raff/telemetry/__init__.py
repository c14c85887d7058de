"""
Telemetry Module
================

Observability for the webhook service.

Components:
- sentry.py: Error tracking and alarms for misconfiguration

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from raff.telemetry import init_sentry, capture_exception
"""

from raff.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
