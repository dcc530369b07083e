"""Quality gate: validation first, then evaluation, strictly in that order.

Retrying a rejected output is the step runner's job, not the gate's.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from ..log import get_logger
from ..orchestration.schema import ExecutionStep, StepOutput
from .evaluation import EvaluationResult, Evaluator
from .validation import ValidationResult, validate

logger = get_logger(__name__)


class QualityGateResult(BaseModel):
    passed: bool
    validation_result: ValidationResult
    needs_fix: bool
    evaluation: Optional[EvaluationResult] = None


class QualityGate:
    def __init__(self, evaluator: Evaluator) -> None:
        self.evaluator = evaluator

    async def run(self, step: ExecutionStep, output: StepOutput, request: str) -> QualityGateResult:
        validation = validate(step, output)
        if not validation.passed:
            logger.warning(
                "Validation failed for step %s (score %.2f, failed checks: %s)",
                step.id,
                validation.overall_score,
                ", ".join(c.name for c in validation.checks if not c.passed),
            )
            return QualityGateResult(passed=False, validation_result=validation, needs_fix=True)

        evaluation = await self.evaluator.evaluate(request, output)
        if not evaluation.passed:
            logger.warning("Evaluation failed for step %s (score %.2f)", step.id, evaluation.score)
            validation.passed = False
            validation.feedback = evaluation.feedback or (
                f"Answer quality scored {evaluation.score:.2f}; make it clearer and more relevant"
            )
            return QualityGateResult(
                passed=False, validation_result=validation, needs_fix=True, evaluation=evaluation
            )

        logger.info(
            "Quality gate passed for step %s (validation %.2f, evaluation %.2f)",
            step.id, validation.overall_score, evaluation.score,
        )
        return QualityGateResult(
            passed=True, validation_result=validation, needs_fix=False, evaluation=evaluation
        )
