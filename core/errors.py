"""
Error taxonomy for routing, configuration and the queue pipeline.

Configuration/validation errors surface to the administrative caller.
Runtime routing errors are caught by the router and turned into a
fail-closed RoutingOutcome. QueueUnavailable always reaches the caller.
"""
from __future__ import annotations


class InboundRouterError(Exception):
    """Base exception for all router errors."""

    def __init__(self, message: str = "", **context):
        self.context = context
        super().__init__(message)


class ConfigurationError(InboundRouterError):
    """Invalid deployment configuration (bad time, timezone, weekday …)."""


class InvalidResourceBinding(ConfigurationError):
    """Zero or several resource references, or a duplicate binding."""


class ResourceNotFound(InboundRouterError):
    """No deployment resource for the requested lookup."""


class ScheduleEvaluationError(InboundRouterError):
    """Malformed schedule: unknown timezone or unparseable time strings."""


class QueueUnavailable(InboundRouterError):
    """Append or read against the queue backend failed."""


class ConsumerProcessingError(InboundRouterError):
    """Downstream dispatch failed inside a worker; the entry stays pending."""

    def __init__(self, message: str = "", retryable: bool = True, **context):
        self.retryable = retryable
        super().__init__(message, **context)
