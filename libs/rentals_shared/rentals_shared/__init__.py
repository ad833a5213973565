from .env import env_bool, env_float, env_int, env_list
from .internal_hmac import (
    canonical_json,
    sign_internal_request_headers,
    sign_webhook,
    verify_webhook_signature,
)
from .rate_limit import RedisRateLimiter, SlidingWindowLimiter

__all__ = [
    "env_bool",
    "env_float",
    "env_int",
    "env_list",
    "canonical_json",
    "sign_internal_request_headers",
    "sign_webhook",
    "verify_webhook_signature",
    "SlidingWindowLimiter",
    "RedisRateLimiter",
]
