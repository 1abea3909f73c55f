"""Utility helpers for the Agent Task Engine."""

from .retry import RetryError, RetryPolicy, retry_async

__all__ = ["RetryError", "RetryPolicy", "retry_async"]
