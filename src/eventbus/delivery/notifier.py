"""Notifier contract: pushes a batch of CloudEvents to one subscriber connection."""

from typing import List, Protocol, runtime_checkable

from eventbus.models.event import CloudEvent
from eventbus.models.notify import NotifyResult


@runtime_checkable
class Notifier(Protocol):
    """
    Delivers events to a subscriber.

    Implementations should return NotifyResult(success=False, ...) for
    ordinary delivery failures instead of raising. A raised exception is
    handled by the worker like success=False with the exception text as
    the error.
    """

    async def notify(self, connection_id: str, events: List[CloudEvent]) -> NotifyResult:
        ...
