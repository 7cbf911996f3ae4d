"""
Module: notify.py
Description: Subscriber notification result models.

A notifier reports the outcome of delivering a batch of events to one
subscriber. Three batch-level outcomes exist:

- success=True: every event was processed
- success=False with retry_after > 0: subscriber asks to try again later
  (backpressure, does not consume the retry budget)
- success=False otherwise: delivery failed, retried with backoff

A subscriber may also answer per event through `results`, keyed by event
id. Events absent from `results` fall back to the batch-level outcome.

Dependencies: pydantic, typing
Author: Event Bus Team
"""

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventResult(BaseModel):
    """Outcome for a single event inside a batch."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = False
    error: Optional[str] = None
    retry_after: Optional[float] = Field(
        default=None,
        alias="retryAfter",
        description="Seconds to wait before re-delivering"
    )

    @property
    def is_deferred(self) -> bool:
        return not self.success and self.retry_after is not None and self.retry_after > 0


class NotifyResult(EventResult):
    """Outcome of notifying a subscriber about a batch of events."""

    results: Optional[Dict[str, EventResult]] = None

    def outcome_for(self, event_id: str) -> EventResult:
        """Return the per-event outcome, falling back to the batch outcome."""
        if self.results and event_id in self.results:
            return self.results[event_id]
        return EventResult(success=self.success, error=self.error, retry_after=self.retry_after)
