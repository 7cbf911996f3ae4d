"""
Module: utils
Description: Package initialization for utility functions.

Current utilities:
- logger: Structured logging configuration and helpers
- filters: Subscription filter parsing and matching
- timeutils: UTC timestamp helpers
"""

__all__ = []
