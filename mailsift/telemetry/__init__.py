"""Telemetry helpers.

This package emits deterministic phase logs for run auditing.
"""

from .logger import RunLogger, log_event

__all__ = ["RunLogger", "log_event"]
