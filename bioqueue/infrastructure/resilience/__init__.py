"""API Resilience Implementations.

Contains the backoff policy, the rate-limited dispatch queue and the
retrying HTTP sender built on top of both.
Bounded Context: API Resilience
"""
