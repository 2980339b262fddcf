from .rate_limiter import RateBucket, RateDecision, TokenBucketRateLimiter

__all__ = ["RateBucket", "RateDecision", "TokenBucketRateLimiter"]
