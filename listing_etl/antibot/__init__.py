"""Anti-bot helpers for the portal transport.

- User-agent / header pools for identity rotation
- Proxy rotation
- Circuit breaker and rotation cadence
"""

from .proxy import ProxyConfig, ProxyRotator
from .retry import CircuitBreaker, CircuitBreakerConfig, CircuitOpenError, RotationCadence
from .user_agent import UserAgentPool

__all__ = [
    "ProxyConfig",
    "ProxyRotator",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "RotationCadence",
    "UserAgentPool",
]
