"""
Flaky-test quarantine: policy evaluation, impact simulation and tracking.
"""

from .engine import QuarantineEngine
from .errors import ConflictError, NotFoundError, PolicyValidationError, QuarantineError
from .evaluator import PolicyEvaluator
from .impact import ImpactTracker
from .simulator import ImpactSimulator

__all__ = [
    "QuarantineEngine",
    "PolicyEvaluator",
    "ImpactSimulator",
    "ImpactTracker",
    "QuarantineError",
    "PolicyValidationError",
    "NotFoundError",
    "ConflictError",
]
