"""Shared helpers."""

from .retry import IMMEDIATE_RETRY, RetryPolicy, call_with_retry

__all__ = ["IMMEDIATE_RETRY", "RetryPolicy", "call_with_retry"]
