"""Rule-based validation of a step output: completeness, accuracy, safety, format."""

from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel

from ..orchestration.schema import ExecutionStep, StepOutput

MIN_OUTPUT_LENGTH = 50
PASS_SCORE = 0.6
MIN_PASSED_CHECKS = 3

_ACKNOWLEDGES_GAP = (
    "i don't have",
    "i do not have",
    "no information",
    "not found",
    "couldn't find",
    "could not find",
    "not enough information",
    "based on general knowledge",
)

_UNSAFE_PATTERNS = (
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"credit.?card", re.IGNORECASE),
    re.compile(r"\b(?:\d[ -]?){13,16}\b"),  # card-like digit runs
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),  # SSN
    re.compile(r"social security number", re.IGNORECASE),
)

_INTERNAL_PATTERNS = (
    re.compile(r"orchestrator", re.IGNORECASE),
    re.compile(r"knowledge pack", re.IGNORECASE),
    re.compile(r"the agent executed", re.IGNORECASE),
    re.compile(r"the system works", re.IGNORECASE),
)


class ValidationCheck(BaseModel):
    name: str
    passed: bool
    score: float
    details: Optional[str] = None


class ValidationResult(BaseModel):
    passed: bool
    checks: list[ValidationCheck]
    overall_score: float
    feedback: Optional[str] = None


def check_completeness(output: StepOutput) -> ValidationCheck:
    if len(output.summary.strip()) < MIN_OUTPUT_LENGTH:
        return ValidationCheck(
            name="completeness", passed=False, score=0.3, details="The answer is too short"
        )
    if not output.success:
        return ValidationCheck(
            name="completeness", passed=False, score=0.2, details="The agent reported a failure"
        )
    return ValidationCheck(name="completeness", passed=True, score=1.0)


def check_accuracy(step: ExecutionStep, output: StepOutput) -> ValidationCheck:
    """Advisory: unsupported high-confidence answers lose score but still pass."""
    has_knowledge = bool(step.input.context.get("knowledge")) or bool(output.citations)
    if not has_knowledge:
        text = output.summary.lower()
        acknowledges = any(phrase in text for phrase in _ACKNOWLEDGES_GAP)
        if not acknowledges and output.confidence == "high":
            return ValidationCheck(
                name="accuracy",
                passed=True,
                score=0.7,
                details="Confident answer without supporting sources",
            )
    return ValidationCheck(name="accuracy", passed=True, score=1.0)


def check_safety(output: StepOutput) -> ValidationCheck:
    for pattern in _UNSAFE_PATTERNS:
        if pattern.search(output.summary):
            return ValidationCheck(
                name="safety",
                passed=False,
                score=0.0,
                details="The answer may contain sensitive information",
            )
    return ValidationCheck(name="safety", passed=True, score=1.0)


def check_format(output: StepOutput) -> ValidationCheck:
    text = output.summary
    if "```json" in text or text.lstrip().startswith("{"):
        return ValidationCheck(
            name="format", passed=False, score=0.5, details="The answer is in a technical format"
        )
    for pattern in _INTERNAL_PATTERNS:
        if pattern.search(text):
            return ValidationCheck(
                name="format",
                passed=False,
                score=0.6,
                details="The answer explains system internals",
            )
    return ValidationCheck(name="format", passed=True, score=1.0)


def validate(step: ExecutionStep, output: StepOutput) -> ValidationResult:
    """Run every check and combine them.

    Safety is blocking. Otherwise the output passes on a mean score of at
    least 0.6 or when at least three checks passed.
    """
    checks = [
        check_completeness(output),
        check_accuracy(step, output),
        check_safety(output),
        check_format(output),
    ]
    overall = sum(c.score for c in checks) / len(checks)
    safety_passed = next(c.passed for c in checks if c.name == "safety")
    passed_count = sum(1 for c in checks if c.passed)
    passed = safety_passed and (overall >= PASS_SCORE or passed_count >= MIN_PASSED_CHECKS)

    feedback = None
    if not passed:
        feedback = "; ".join(c.details for c in checks if not c.passed and c.details)
    return ValidationResult(passed=passed, checks=checks, overall_score=overall, feedback=feedback)
