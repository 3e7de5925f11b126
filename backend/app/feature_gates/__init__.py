"""Feature gating utilities enforcing plan limits on tenant operations."""
from .context import EntitlementContext
from .exceptions import FeatureGateError
from .quota import LimitEvaluation, assert_within_limit, evaluate_limit

__all__ = [
    "EntitlementContext",
    "FeatureGateError",
    "LimitEvaluation",
    "assert_within_limit",
    "evaluate_limit",
]
