"""
Competency Assessment Configuration Module

This module holds the catalog constants of the competency assessment: the
competency domains and the professional-development tracks they belong to,
the per-type question quotas, the scoring thresholds and the mapping from a
domain to the micro-PD modules recommended when it is a gap.
"""

import re
from enum import Enum
from typing import Dict, Final, List, Tuple

from competency_backend.assessments.base.models import ProficiencyLevel, QuestionType

# ============================================================================
# Competency Domains & Tracks
# ============================================================================

class CompetencyDomain(str, Enum):
    """The fixed set of competency domains questions are tagged with."""
    # Track 1: Pedagogical Mastery
    LESSON_PLANNING = "lesson_planning"
    INSTRUCTIONAL_STRATEGIES = "instructional_strategies"
    CLASSROOM_MANAGEMENT = "classroom_management"
    ASSESSMENT_FEEDBACK = "assessment_feedback"
    FACILITATION_PRESENTATION = "facilitation_presentation"

    # Track 2: Tech & AI Fluency
    EDTECH_FLUENCY = "edtech_fluency"
    AI_LITERACY = "ai_literacy"
    BLENDED_ONLINE_INSTRUCTION = "blended_online_instruction"
    CYBERSECURITY_DIGITAL_CITIZENSHIP = "cybersecurity_digital_citizenship"

    # Track 3: Inclusive Practice
    DIFFERENTIATED_INSTRUCTION = "differentiated_instruction"
    INCLUSIVE_EDUCATION = "inclusive_education"
    CULTURAL_COMPETENCE_DEI = "cultural_competence_dei"
    SOCIAL_EMOTIONAL_LEARNING = "social_emotional_learning"

    # Track 4: Professional Identity
    REFLECTIVE_PRACTICE = "reflective_practice"
    LIFELONG_LEARNING = "lifelong_learning"
    CAREER_PORTFOLIO = "career_portfolio"
    PARENT_STAKEHOLDER_COMMUNICATION = "parent_stakeholder_communication"
    PROFESSIONAL_COLLABORATION = "professional_collaboration"
    ETHICS_PROFESSIONALISM = "ethics_professionalism"

    # Track 5: Global Citizenship
    INNOVATION_CHANGE_MANAGEMENT = "innovation_change_management"
    CRITICAL_THINKING_CREATIVITY = "critical_thinking_creativity"
    GLOBAL_CITIZENSHIP_SUSTAINABILITY = "global_citizenship_sustainability"
    MEDIA_INFORMATION_LITERACY = "media_information_literacy"

    # Track 6: Educational Foundations
    CHILD_DEVELOPMENT_PSYCHOLOGY = "child_development_psychology"
    EDUCATION_POLICY_GOVERNANCE = "education_policy_governance"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls._value2member_map_


class PDTrack(str, Enum):
    """Professional-development tracks grouping the competency domains."""
    PEDAGOGICAL_MASTERY = "pedagogical_mastery"
    TECH_AI_FLUENCY = "tech_ai_fluency"
    INCLUSIVE_PRACTICE = "inclusive_practice"
    PROFESSIONAL_IDENTITY = "professional_identity"
    GLOBAL_CITIZENSHIP = "global_citizenship"
    EDUCATIONAL_FOUNDATIONS = "educational_foundations"


TRACK_NAMES: Final[Dict[PDTrack, str]] = {
    PDTrack.PEDAGOGICAL_MASTERY: "Pedagogical Mastery",
    PDTrack.TECH_AI_FLUENCY: "AI & Tech",
    PDTrack.INCLUSIVE_PRACTICE: "Inclusive Practice",
    PDTrack.PROFESSIONAL_IDENTITY: "Professional Identity",
    PDTrack.GLOBAL_CITIZENSHIP: "Global Citizenship",
    PDTrack.EDUCATIONAL_FOUNDATIONS: "Educational Foundations",
}

TRACK_DOMAINS: Final[Dict[PDTrack, Tuple[CompetencyDomain, ...]]] = {
    PDTrack.PEDAGOGICAL_MASTERY: (
        CompetencyDomain.LESSON_PLANNING,
        CompetencyDomain.INSTRUCTIONAL_STRATEGIES,
        CompetencyDomain.CLASSROOM_MANAGEMENT,
        CompetencyDomain.ASSESSMENT_FEEDBACK,
        CompetencyDomain.FACILITATION_PRESENTATION,
    ),
    PDTrack.TECH_AI_FLUENCY: (
        CompetencyDomain.EDTECH_FLUENCY,
        CompetencyDomain.AI_LITERACY,
        CompetencyDomain.BLENDED_ONLINE_INSTRUCTION,
        CompetencyDomain.CYBERSECURITY_DIGITAL_CITIZENSHIP,
    ),
    PDTrack.INCLUSIVE_PRACTICE: (
        CompetencyDomain.DIFFERENTIATED_INSTRUCTION,
        CompetencyDomain.INCLUSIVE_EDUCATION,
        CompetencyDomain.CULTURAL_COMPETENCE_DEI,
        CompetencyDomain.SOCIAL_EMOTIONAL_LEARNING,
    ),
    PDTrack.PROFESSIONAL_IDENTITY: (
        CompetencyDomain.REFLECTIVE_PRACTICE,
        CompetencyDomain.LIFELONG_LEARNING,
        CompetencyDomain.CAREER_PORTFOLIO,
        CompetencyDomain.PARENT_STAKEHOLDER_COMMUNICATION,
        CompetencyDomain.PROFESSIONAL_COLLABORATION,
        CompetencyDomain.ETHICS_PROFESSIONALISM,
    ),
    PDTrack.GLOBAL_CITIZENSHIP: (
        CompetencyDomain.INNOVATION_CHANGE_MANAGEMENT,
        CompetencyDomain.CRITICAL_THINKING_CREATIVITY,
        CompetencyDomain.GLOBAL_CITIZENSHIP_SUSTAINABILITY,
        CompetencyDomain.MEDIA_INFORMATION_LITERACY,
    ),
    PDTrack.EDUCATIONAL_FOUNDATIONS: (
        CompetencyDomain.CHILD_DEVELOPMENT_PSYCHOLOGY,
        CompetencyDomain.EDUCATION_POLICY_GOVERNANCE,
    ),
}

DOMAIN_TO_TRACK_MAP: Final[Dict[str, PDTrack]] = {
    domain.value: track
    for track, domains in TRACK_DOMAINS.items()
    for domain in domains
}

# Track-level module types offered as micro-PDs
TRACK_MODULE_TYPES: Final[Dict[PDTrack, Tuple[str, ...]]] = {
    PDTrack.PEDAGOGICAL_MASTERY: ("Lesson Planning", "Engagement Strategies", "Assessment Design"),
    PDTrack.TECH_AI_FLUENCY: ("AI Literacy", "EdTech Tools", "Digital Safety"),
    PDTrack.INCLUSIVE_PRACTICE: ("UDL Design", "SEL Activities", "Differentiation"),
    PDTrack.PROFESSIONAL_IDENTITY: ("Reflection Journals", "Parent Communication", "Ethics"),
    PDTrack.GLOBAL_CITIZENSHIP: ("PBL", "Creativity Frameworks", "Media Literacy"),
    PDTrack.EDUCATIONAL_FOUNDATIONS: ("Learning Theories", "Child Psychology", "Policy Awareness"),
}


def micro_pd_id(track: PDTrack, module_type: str) -> str:
    """Stable identifier of a track module, e.g. ``tech_ai_fluency:edtech_tools``."""
    slug = re.sub(r"[^a-z0-9]+", "_", module_type.lower()).strip("_")
    return f"{track.value}:{slug}"


# Gap domain -> recommended micro-PD ids (all modules of the domain's track)
DOMAIN_MICRO_PD_MAP: Final[Dict[str, List[str]]] = {
    domain: [micro_pd_id(track, module_type) for module_type in TRACK_MODULE_TYPES[track]]
    for domain, track in DOMAIN_TO_TRACK_MAP.items()
}

# ============================================================================
# Selection & Scoring Parameters
# ============================================================================

QUESTIONS_BY_TYPE: Final[Dict[QuestionType, int]] = {
    QuestionType.MCQ: 10,
    QuestionType.SHORT_ANSWER: 5,
    QuestionType.AUDIO: 2,
    QuestionType.VIDEO: 1,
}

TOTAL_COMPETENCY_QUESTIONS: Final[int] = sum(QUESTIONS_BY_TYPE.values())

# Per-domain "90% rule": at or above is a strength, below is a gap
STRENGTH_THRESHOLD_PERCENT: Final[float] = 90.0

# Lower bounds (inclusive) of the overall proficiency bands, highest first
PROFICIENCY_BANDS: Final[Tuple[Tuple[float, ProficiencyLevel], ...]] = (
    (80.0, ProficiencyLevel.ADVANCED),
    (60.0, ProficiencyLevel.PROFICIENT),
    (40.0, ProficiencyLevel.DEVELOPING),
    (0.0, ProficiencyLevel.BEGINNER),
)

# Presentation order of question groups returned to the client
QUESTION_TYPE_ORDER: Final[Tuple[QuestionType, ...]] = (
    QuestionType.MCQ,
    QuestionType.SHORT_ANSWER,
    QuestionType.AUDIO,
    QuestionType.VIDEO,
)
