"""
Per-Question Answer Evaluation for the Competency Assessment

This module scores one answered question at a time. Scoring depends on the
question type:

1. MCQ answers are compared locally with the correct option
2. SHORT_ANSWER answers are scored by the judgment service under the retry
   policy, degrading to a fallback score when it stays unavailable
3. AUDIO and VIDEO answers are transcribed first and then scored like
   SHORT_ANSWER; a failed transcription scores zero for that question

A missing or blank answer scores zero before any type-specific logic runs.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional, Sequence

from competency_backend.assessments.base.models import (
    Question,
    QuestionEvaluationResult,
    QuestionType,
)
from competency_backend.assessments.competency.judgment import (
    JudgmentService,
    ScoredJudgment,
    parse_score_response,
)
from competency_backend.assessments.competency.prompts import (
    EVALUATOR_SYSTEM_PROMPT,
    build_answer_prompt,
)
from competency_backend.assessments.competency.transcription import TranscriptionService
from competency_backend.common.error_handling import (
    ConfigurationError,
    RetryPolicy,
    call_with_fallback,
)
from competency_backend.common.logger import app_logger

# Module logger
logger = app_logger.getChild("competency.answer_evaluation")

NO_ANSWER_FEEDBACK = "No answer provided."
CORRECT_FEEDBACK = "Correct answer."
FALLBACK_FEEDBACK = "Evaluation completed with fallback scoring due to AI service unavailability."
TRANSCRIPTION_FAILED_FEEDBACK: Dict[QuestionType, str] = {
    QuestionType.AUDIO: "Unable to transcribe audio. Please ensure audio is clear and try again.",
    QuestionType.VIDEO: "Unable to process video. Please ensure video has clear audio and try again.",
}

DEFAULT_FALLBACK_FRACTION = 0.5


def _result(question: Question, score: float, feedback: str) -> QuestionEvaluationResult:
    return QuestionEvaluationResult(
        question_id=question.id,
        domain_key=question.domain_key,
        question_type=question.question_type,
        score=score,
        max_score=question.max_score,
        feedback=feedback,
    )


class AnswerScorer(ABC):
    """Scores a non-blank answer to a question of one type."""

    @abstractmethod
    async def score(self, question: Question, answer: str) -> QuestionEvaluationResult:
        pass


class MultipleChoiceScorer(AnswerScorer):
    """Exact, case-insensitive match against the correct option. Full marks or zero."""

    async def score(self, question: Question, answer: str) -> QuestionEvaluationResult:
        correct_option = question.correct_option or ""
        is_correct = answer.strip().lower() == correct_option.strip().lower()
        if is_correct:
            return _result(question, float(question.max_score), CORRECT_FEEDBACK)
        return _result(question, 0.0, f"Incorrect. The correct answer was: {correct_option}")


class TextAnswerScorer(AnswerScorer):
    """Scores text with the judgment service, falling back to a fixed fraction of max score."""

    def __init__(
        self,
        judgment: JudgmentService,
        retry_policy: RetryPolicy,
        fallback_fraction: float = DEFAULT_FALLBACK_FRACTION,
        temperature: float = 0.3,
        max_tokens: int = 500
    ):
        if not 0 <= fallback_fraction <= 1:
            raise ConfigurationError(f"Fallback fraction must be within [0, 1], got {fallback_fraction}")
        self.judgment = judgment
        self.retry_policy = retry_policy
        self.fallback_fraction = fallback_fraction
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def score(self, question: Question, answer: str) -> QuestionEvaluationResult:
        return await self.score_text(question, answer)

    async def score_text(self, question: Question, text: str) -> QuestionEvaluationResult:
        """Score ``text`` as the answer to ``question`` (text may be a transcript)."""
        user_prompt = build_answer_prompt(
            question.question_type, question.prompt, text, question.max_score, question.domain_key
        )

        async def attempt() -> ScoredJudgment:
            raw = await self.judgment.judge(
                EVALUATOR_SYSTEM_PROMPT,
                user_prompt,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            return parse_score_response(raw, question.max_score)

        def fallback(_: Optional[Exception]) -> ScoredJudgment:
            return ScoredJudgment(
                score=question.max_score * self.fallback_fraction,
                feedback=FALLBACK_FEEDBACK,
            )

        judged = await call_with_fallback(
            attempt,
            self.retry_policy,
            fallback,
            operation_name=f"Judgment of question {question.id}",
            log=logger,
        )
        return _result(question, judged.score, judged.feedback)


class MediaAnswerScorer(AnswerScorer):
    """Transcribes a media answer, then scores the transcript as text."""

    def __init__(self, transcription: TranscriptionService, text_scorer: TextAnswerScorer):
        self.transcription = transcription
        self.text_scorer = text_scorer

    async def score(self, question: Question, answer: str) -> QuestionEvaluationResult:
        try:
            transcript = await self.transcription.transcribe(answer.strip(), question.question_type)
        except Exception as e:
            logger.error(
                f"Transcription failed for question {question.id}: {type(e).__name__}: {e}"
            )
            return _result(question, 0.0, TRANSCRIPTION_FAILED_FEEDBACK[question.question_type])

        return await self.text_scorer.score_text(question, transcript)


class AnswerEvaluator:
    """
    Dispatches each question to the scorer registered for its type.

    Every QuestionType must have a scorer; a missing one is reported when the
    evaluator is built rather than when such a question is first evaluated.
    """

    def __init__(
        self,
        judgment: JudgmentService,
        transcription: TranscriptionService,
        retry_policy: Optional[RetryPolicy] = None,
        fallback_fraction: float = DEFAULT_FALLBACK_FRACTION,
        temperature: float = 0.3,
        max_tokens: int = 500,
        scorers: Optional[Mapping[QuestionType, AnswerScorer]] = None
    ):
        text_scorer = TextAnswerScorer(
            judgment,
            retry_policy or RetryPolicy(),
            fallback_fraction=fallback_fraction,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        media_scorer = MediaAnswerScorer(transcription, text_scorer)

        self._scorers: Dict[QuestionType, AnswerScorer] = {
            QuestionType.MCQ: MultipleChoiceScorer(),
            QuestionType.SHORT_ANSWER: text_scorer,
            QuestionType.AUDIO: media_scorer,
            QuestionType.VIDEO: media_scorer,
        }
        if scorers:
            self._scorers.update(scorers)

        missing = [t.value for t in QuestionType if t not in self._scorers]
        if missing:
            raise ConfigurationError(f"No scorer registered for question types: {', '.join(missing)}")

    async def evaluate(self, question: Question, answer: Optional[str]) -> QuestionEvaluationResult:
        """
        Score one question.

        Args:
            question: The question
            answer: The raw answer, or None when the question was not answered

        Returns:
            The question's evaluation result
        """
        if answer is None or not str(answer).strip():
            return _result(question, 0.0, NO_ANSWER_FEEDBACK)
        return await self._scorers[question.question_type].score(question, str(answer))

    async def evaluate_all(
        self,
        questions: Sequence[Question],
        answers: Mapping[str, str]
    ) -> List[QuestionEvaluationResult]:
        """Score questions one after another, in the given order."""
        results = []
        for question in questions:
            results.append(await self.evaluate(question, answers.get(question.id)))
        return results
