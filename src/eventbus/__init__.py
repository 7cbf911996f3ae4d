"""
Package: eventbus
Description: At-least-once event delivery with retries and cron schedules.

Publishers store events, subscribers register interest per event type,
and a polling worker claims due deliveries, notifies subscribers in
batches and applies backoff, deferral and cron rescheduling.
"""

__version__ = "0.3.0"
