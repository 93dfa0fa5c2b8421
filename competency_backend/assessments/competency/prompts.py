"""
Judgment Prompts for the Competency Assessment

Prompt builders for scoring free-text and transcribed answers and for the
overall narrative summary. Scores use a three-dimension rubric (0-3 each)
scaled to the question's maximum score.
"""

from typing import Dict, List, Sequence, Tuple

from competency_backend.assessments.base.models import DomainScore, QuestionType
from competency_backend.assessments.competency.competency_config import STRENGTH_THRESHOLD_PERCENT

# (json key, title, level descriptions 0..3)
RubricDimension = Tuple[str, str, Tuple[str, str, str, str]]

SHORT_ANSWER_RUBRIC: Tuple[RubricDimension, ...] = (
    ("depthOfReflection", "DEPTH OF REFLECTION", (
        "No response or irrelevant answer",
        "Superficial response, minimal relevance",
        "General insights with some application",
        "Clear, detailed reflection with relevance",
    )),
    ("growthOrientation", "GROWTH ORIENTATION", (
        "Shows no self-improvement or insight",
        "Acknowledges problem but no clear learning",
        "Demonstrates learning from experience",
        "Demonstrates clear growth or change",
    )),
    ("clarityOfThought", "CLARITY OF THOUGHT", (
        "Rambling or incoherent",
        "Somewhat understandable but vague",
        "Mostly clear, some minor issues",
        "Well-organized and articulate",
    )),
)

ROLEPLAY_RUBRIC: Tuple[RubricDimension, ...] = (
    ("empathyAndTone", "EMPATHY & TONE", (
        "Insensitive or dismissive tone",
        "Limited empathy or forced tone",
        "Generally warm and student-focused",
        "Empathetic, calm, and appropriate",
    )),
    ("instructionalLanguage", "INSTRUCTIONAL LANGUAGE", (
        "No instructional terms or strategy mentioned",
        "Vague strategy mentioned with unclear terms",
        "Some relevant instructional language",
        "Effective use of educational vocabulary",
    )),
    ("logicalStructure", "LOGICAL STRUCTURE", (
        "Completely illogical or unrelated",
        "Weak logic or partial mismatch",
        "Mostly logical flow with purpose",
        "Well-structured response with sound logic",
    )),
)

EVALUATOR_SYSTEM_PROMPT = """You are an expert educational assessment evaluator specializing in teacher competency evaluation.
Your role is to objectively score and provide constructive feedback on teacher responses.

Guidelines:
1. Score responses on a scale from 0 to the maximum score provided
2. Be fair, consistent, and objective in your evaluations
3. Use the rubric dimensions provided to guide your scoring
4. Consider the depth of understanding, practical application, and clarity of explanation
5. Provide specific, actionable feedback
6. Recognize both strengths and areas for improvement

Rubric-Based Scoring:
- For SHORT_ANSWER: Evaluate Depth of Reflection, Growth Orientation, and Clarity of Thought (0-3 each)
- For AUDIO/VIDEO: Evaluate Empathy & Tone, Instructional Language, and Logical Structure (0-3 each)
- Convert rubric scores to the final score proportionally

Response Format:
Always respond with valid JSON in the following format:
{
  "score": <number>,
  "feedback": "<string with constructive feedback>",
  "rubricScores": {
    "dimension1": <0-3>,
    "dimension2": <0-3>,
    "dimension3": <0-3>
  }
}"""

# Per-type framing: (heading, prompt label, answer label, note)
_ANSWER_FRAMING: Dict[QuestionType, Tuple[str, str, str, str]] = {
    QuestionType.SHORT_ANSWER: (
        "SHORT_ANSWER response",
        "Question",
        "Teacher's Response",
        "",
    ),
    QuestionType.AUDIO: (
        "AUDIO roleplay response (transcribed)",
        "Scenario/Prompt",
        "Teacher's Response (Transcribed)",
        "Note: This response was provided as an audio recording. "
        "Evaluate based on the content of the transcription.",
    ),
    QuestionType.VIDEO: (
        "VIDEO roleplay response (transcribed audio)",
        "Scenario/Prompt",
        "Video Content (Transcribed Audio)",
        "Note: This is the transcribed audio from a video submission. "
        "Evaluate based on the verbal content.",
    ),
}


def _format_score(value: float) -> str:
    return f"{value:g}"


def _render_rubric(rubric: Sequence[RubricDimension]) -> str:
    blocks = []
    for index, (_, title, levels) in enumerate(rubric, start=1):
        lines = [f"{index}. {title}:"]
        lines.extend(f"   - {score}: {text}" for score, text in enumerate(levels))
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def _render_json_template(rubric: Sequence[RubricDimension], max_score: str) -> str:
    rubric_lines = ",\n".join(f'    "{key}": <0-3>' for key, _, _ in rubric)
    return (
        "{\n"
        f'  "score": <calculated score 0-{max_score}>,\n'
        '  "feedback": "<constructive feedback addressing each dimension>",\n'
        '  "rubricScores": {\n'
        f"{rubric_lines}\n"
        "  }\n"
        "}"
    )


def build_answer_prompt(
    question_type: QuestionType,
    prompt: str,
    answer: str,
    max_score: float,
    domain_key: str
) -> str:
    """
    Build the scoring prompt for a free-text or transcribed answer.

    Args:
        question_type: SHORT_ANSWER, AUDIO or VIDEO
        prompt: The question or roleplay scenario
        answer: The teacher's text or transcript
        max_score: The question's maximum score
        domain_key: The question's competency domain

    Returns:
        User prompt for the judgment service
    """
    if question_type not in _ANSWER_FRAMING:
        raise ValueError(f"No scoring prompt for question type {question_type.value}")

    heading, prompt_label, answer_label, note = _ANSWER_FRAMING[question_type]
    rubric = SHORT_ANSWER_RUBRIC if question_type == QuestionType.SHORT_ANSWER else ROLEPLAY_RUBRIC
    max_text = _format_score(max_score)

    sections = [
        f"Evaluate the following {heading} for a teacher competency assessment.",
        f"Domain: {domain_key}\nMaximum Score: {max_text}",
        f"{prompt_label}:\n{prompt}",
        f"{answer_label}:\n{answer}",
        "RUBRIC-BASED EVALUATION (Score each dimension 0-3):",
        _render_rubric(rubric),
    ]
    if note:
        sections.append(note)
    sections.append(f"Calculate final score: (sum of rubric scores / 9) * {max_text}")
    sections.append("Provide your evaluation as JSON:\n" + _render_json_template(rubric, max_text))
    return "\n\n".join(sections)


def build_overall_feedback_prompt(
    domain_scores: Sequence[DomainScore],
    strength_domains: List[str],
    gap_domains: List[str]
) -> str:
    """Build the prompt asking for a short narrative summary of the result."""
    threshold = _format_score(STRENGTH_THRESHOLD_PERCENT)
    score_lines = "\n".join(
        f"- {d.domain_key}: {d.score_percent:.1f}%" for d in domain_scores
    )
    strengths = ", ".join(strength_domains) if strength_domains else "None"
    gaps = ", ".join(gap_domains) if gap_domains else "None"

    return (
        "Generate a concise overall feedback summary for a teacher's competency assessment results.\n\n"
        f"Domain Scores:\n{score_lines}\n\n"
        f"Strength Domains (>={threshold}%): {strengths}\n"
        f"Gap Domains (<{threshold}%): {gaps}\n\n"
        "Provide a brief (2-3 sentences), encouraging yet constructive summary that:\n"
        "1. Acknowledges areas of strength\n"
        "2. Identifies key areas for professional development\n"
        "3. Maintains a positive, growth-oriented tone\n\n"
        'Respond with JSON: { "feedback": "<summary string>" }'
    )
