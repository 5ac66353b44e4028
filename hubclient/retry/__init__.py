from .policies import (
    ExponentialBackoffRetryPolicy,
    IncrementalDelayRetryPolicy,
    NoRetryPolicy,
    RetryDecision,
    RetryPolicy,
)

__all__ = [
    "ExponentialBackoffRetryPolicy",
    "IncrementalDelayRetryPolicy",
    "NoRetryPolicy",
    "RetryDecision",
    "RetryPolicy",
]
