"""Anti-detection toolkit used around every non-login navigation.

- Human behavior simulation (delays, mouse, scrolling, typing)
- Device fingerprints and stealth browser contexts
- Block/challenge detection with bounded recovery
- Persisted login sessions
- Captcha solving for login forms
- Retry policy and circuit breaker
- Proxy configuration
"""

from .behavior import BehaviorConfig, BehaviorPresets, HumanBehavior
from .blocking import BlockGuard
from .captcha import CaptchaSettings, CaptchaSolver, resolve_recaptcha
from .fingerprint import STEALTH_LAUNCH_ARGS, DeviceFingerprint, FingerprintPainter, create_stealth_context
from .proxy import ProxyConfig
from .retry import CircuitBreaker, CircuitBreakerConfig, CircuitOpenError, RetryPolicy
from .storage import SessionStore

__all__ = [
    "BehaviorConfig",
    "BehaviorPresets",
    "HumanBehavior",
    "BlockGuard",
    "CaptchaSettings",
    "CaptchaSolver",
    "resolve_recaptcha",
    "STEALTH_LAUNCH_ARGS",
    "DeviceFingerprint",
    "FingerprintPainter",
    "create_stealth_context",
    "ProxyConfig",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "RetryPolicy",
    "SessionStore",
]
