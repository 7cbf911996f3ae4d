"""
Module: handlers
Description: FastAPI routers for the event bus HTTP API.

- events: publish, inspect, acknowledge and cancel events
- subscriptions: manage the calling connection's subscriptions
"""
