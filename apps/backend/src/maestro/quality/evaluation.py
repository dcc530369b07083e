"""Model-scored evaluation of clarity, professionalism, relevance and tone."""

from __future__ import annotations

from typing import Optional, Protocol

from pydantic import BaseModel, Field

from ..log import get_logger
from ..orchestration.schema import StepOutput
from ..agents.base import collect_reply, extract_json, run_agent

logger = get_logger(__name__)

PASS_SCORE = 0.7
FALLBACK_PASS_SCORE = 0.6

EVALUATOR_SYSTEM_PROMPT = "You review answers written for end users. Reply with JSON only."

EVALUATION_PROMPT = """\
Rate the answer below against the original request.

Original request:
{request}

Answer:
{answer}

Score each aspect from 0 to 10:
1. clarity - is the answer clear and easy to follow?
2. professionalism - is the register professional and appropriate?
3. relevance - does it actually answer the request?
4. tone - does it sound human rather than salesy?

Return JSON only:
{{"clarity": 8, "professionalism": 9, "relevance": 7, "tone": 8, "feedback": "short notes, if any"}}
"""


class EvaluationAspects(BaseModel):
    clarity: float
    professionalism: float
    relevance: float
    tone: float


class EvaluationResult(BaseModel):
    passed: bool
    score: float
    feedback: Optional[str] = None
    aspects: EvaluationAspects
    fallback: bool = False


class ModelScores(BaseModel):
    clarity: float = Field(ge=0, le=10)
    professionalism: float = Field(ge=0, le=10)
    relevance: float = Field(ge=0, le=10)
    tone: float = Field(ge=0, le=10)
    feedback: Optional[str] = None


class Evaluator(Protocol):
    async def evaluate(self, request: str, output: StepOutput) -> EvaluationResult: ...


def heuristic_evaluation(output: StepOutput) -> EvaluationResult:
    """Scores derived from the output alone, used when the model is unavailable."""
    text = output.summary
    length_score = min(len(text) / 500, 1.0)
    structure_score = 0.8 if ("\n" in text or ":" in text or "-" in text) else 0.5
    confidence_score = {"high": 0.9, "medium": 0.7}.get(output.confidence, 0.5)
    score = (length_score + structure_score + confidence_score) / 3
    return EvaluationResult(
        passed=score >= FALLBACK_PASS_SCORE,
        score=score,
        aspects=EvaluationAspects(
            clarity=length_score,
            professionalism=structure_score,
            relevance=confidence_score,
            tone=0.7,
        ),
        fallback=True,
    )


def scores_to_result(scores: ModelScores) -> EvaluationResult:
    aspects = EvaluationAspects(
        clarity=scores.clarity / 10,
        professionalism=scores.professionalism / 10,
        relevance=scores.relevance / 10,
        tone=scores.tone / 10,
    )
    score = (aspects.clarity + aspects.professionalism + aspects.relevance + aspects.tone) / 4
    return EvaluationResult(
        passed=score >= PASS_SCORE,
        score=score,
        feedback=scores.feedback,
        aspects=aspects,
    )


class ModelEvaluator:
    """Asks Claude to score an answer; falls back to heuristics on any failure."""

    def __init__(self, max_turns: int = 1) -> None:
        self.max_turns = max_turns

    async def evaluate(self, request: str, output: StepOutput) -> EvaluationResult:
        prompt = EVALUATION_PROMPT.format(request=request, answer=output.summary)
        try:
            reply = await collect_reply(
                run_agent(prompt=prompt, system_prompt=EVALUATOR_SYSTEM_PROMPT, max_turns=self.max_turns)
            )
            if reply.error:
                raise RuntimeError(reply.error)
            scores = ModelScores.model_validate(extract_json(reply.text))
        except Exception as e:
            logger.warning("Evaluation model call failed, using heuristic scores: %s", e)
            return heuristic_evaluation(output)
        return scores_to_result(scores)


class HeuristicEvaluator:
    """Evaluator that never calls a model."""

    async def evaluate(self, request: str, output: StepOutput) -> EvaluationResult:
        return heuristic_evaluation(output)
