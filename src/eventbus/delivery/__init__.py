"""
Package: delivery
Description: Event delivery for the event bus.

Provides the polling delivery worker, the notifier contract with its
webhook implementation, the retry/backoff policy and cron evaluation.
"""
