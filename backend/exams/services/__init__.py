from .attempts import AttemptCloser, OrphanReport
from .clock import CivilClock
from .completeness import CompletenessEvaluator
from .lifecycle import ExamLifecycle, SweepReport, TransitionOutcome
from .reconciliation import ThrottledSweep, load_exam, reconcile_on_access

__all__ = [
    "AttemptCloser",
    "CivilClock",
    "CompletenessEvaluator",
    "ExamLifecycle",
    "OrphanReport",
    "SweepReport",
    "ThrottledSweep",
    "TransitionOutcome",
    "load_exam",
    "reconcile_on_access",
]
