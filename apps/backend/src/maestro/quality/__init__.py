from .evaluation import EvaluationResult, HeuristicEvaluator, ModelEvaluator, heuristic_evaluation
from .gate import QualityGate, QualityGateResult
from .validation import ValidationCheck, ValidationResult, validate

__all__ = [
    "EvaluationResult",
    "HeuristicEvaluator",
    "ModelEvaluator",
    "QualityGate",
    "QualityGateResult",
    "ValidationCheck",
    "ValidationResult",
    "heuristic_evaluation",
    "validate",
]
