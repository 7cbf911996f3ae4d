"""Exceptions raised by the event bus facade."""


class EventBusError(Exception):
    """Base class for event bus errors surfaced to callers."""


class ValidationError(EventBusError, ValueError):
    """Raised when a publish or subscribe request is inconsistent."""


class InvalidCronExpression(EventBusError, ValueError):
    """Raised when a cron expression cannot be parsed or never fires."""


class DuplicateEventError(EventBusError):
    """Raised when an event id is already taken."""
