"""Rate limiting adapters.

Counter storage for the gateway's rate limits. The API layer depends on
``AbstractRateLimiter`` only, so the in-process backend and the shared Redis
backend are interchangeable.
"""
