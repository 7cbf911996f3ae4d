"""
Module: storage
Description: Package initialization for the delivery store layer.

This package contains the DeliveryStore contract and its implementations:
- base: Abstract async store interface
- memory: In-process store for tests and single-process deployments
- dynamodb: DynamoDB store with conditional-update claims
"""

__all__ = []
