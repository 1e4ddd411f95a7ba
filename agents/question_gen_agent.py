"""Question Generation Agent — multiple-choice sets for streak challenges.

Given a subject, a challenge duration and the host's current streak, asks
an LLM for a fixed-size set of four-option questions. The count depends
only on the duration and the difficulty only on the streak (escalated one
step in the longest mode). Whatever the model returns is coerced into the
stored shape rather than rejected, so a slightly malformed payload still
yields a playable challenge.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, field

from ai_resilience import resilient_llm_call

logger = logging.getLogger(__name__)

QUESTION_COUNTS = {30: 3, 60: 5, 120: 10, 240: 15}
DEFAULT_QUESTION_COUNT = 5
MAX_DURATION = 240

DIFFICULTY_LEVELS = ["easy", "medium", "hard", "expert"]

# (inclusive upper streak bound, difficulty)
STREAK_TIERS = [(4, "easy"), (10, "medium"), (20, "hard")]

DIFFICULTY_GUIDANCE = {
    "easy": "Basic concepts, straightforward questions",
    "medium": "Moderate complexity, requires understanding",
    "hard": "Complex scenarios, deeper knowledge needed",
    "expert": "Expert-level, highly challenging questions",
}

CALCULATION_SUBJECTS = [
    "physics", "mathematics", "math", "maths", "chemistry", "economics",
    "accounting", "statistics", "calculus", "algebra", "geometry",
    "trigonometry", "mechanics", "thermodynamics", "kinematics",
    "dynamics", "statics", "quantum", "engineering", "finance",
    "quantitative", "numerical", "arithmetic", "computation",
]
CALCULATION_KEYWORDS = ["calculation", "solve", "compute", "formula"]

OPTION_PLACEHOLDERS = ["Option A", "Option B", "Option C", "Option D"]
NO_EXPLANATION = "No explanation provided"

SYSTEM_PROMPT = """You are an expert question generator for educational assessments. Generate exactly {count} multiple-choice questions about "{subject}" at {difficulty} difficulty level.

Each question must have:
- A clear, concise question text
- Exactly 4 options (labeled A, B, C, D)
- One correct answer (index 0-3)
- A detailed explanation
{calculation_instructions}
Return a JSON array with this exact structure:
[
  {{
    "question": "Question text here",
    "options": ["Option A", "Option B", "Option C", "Option D"],
    "answer": 0,
    "explanation": "Detailed explanation of the correct answer"
  }}
]

IMPORTANT:
- Return ONLY the JSON array, no additional text or markdown
- For {difficulty} difficulty: {guidance}
- Make questions engaging and educational
- Ensure all options are plausible"""

CALCULATION_INSTRUCTIONS = """
CALCULATION QUESTIONS REQUIREMENT:
Since this is a calculation-based subject, you MUST:
1. Include numerical problems that require step-by-step calculations
2. Provide clear given values and ask for specific calculated results
3. Use proper mathematical notation and units
4. Make sure each option is a plausible numerical answer
5. In the explanation, show the complete solution with:
   - **Given**: List all given values with units
   - **Required**: What needs to be found
   - **Formula**: The formula(s) used
   - **Solution**: Step-by-step calculation
   - **Answer**: Final answer with proper units
"""

USER_PROMPT = 'Generate {count} {difficulty} difficulty questions about "{subject}" for a competitive challenge.'

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


class QuestionGenerationError(Exception):
    """The model answered but produced nothing usable."""


class ProviderUnavailableError(Exception):
    """No LLM provider is configured."""


@dataclass
class ChallengeQuestion:
    question: str
    options: list[str]
    answer: int
    explanation: str


@dataclass
class QuestionSet:
    questions: list[ChallengeQuestion]
    difficulty: str
    is_calculation: bool
    metadata: dict = field(default_factory=dict)

    @property
    def question_count(self) -> int:
        return len(self.questions)

    def questions_as_dicts(self) -> list[dict]:
        return [asdict(q) for q in self.questions]

    def to_response(self) -> dict:
        return {
            "questions": self.questions_as_dicts(),
            "difficulty": self.difficulty,
            "questionCount": self.question_count,
            "isCalculation": self.is_calculation,
        }


def question_count(duration_seconds: int) -> int:
    return QUESTION_COUNTS.get(duration_seconds, DEFAULT_QUESTION_COUNT)


def difficulty_for_streak(streak: int, duration_seconds: int = 0) -> str:
    """Map a host streak to a difficulty; the longest mode escalates one step."""
    difficulty = "expert"
    for bound, level in STREAK_TIERS:
        if streak <= bound:
            difficulty = level
            break
    if duration_seconds == MAX_DURATION:
        idx = DIFFICULTY_LEVELS.index(difficulty)
        difficulty = DIFFICULTY_LEVELS[min(idx + 1, len(DIFFICULTY_LEVELS) - 1)]
    return difficulty


def is_calculation_subject(subject: str) -> bool:
    lower = subject.lower()
    if any(k in lower for k in CALCULATION_KEYWORDS):
        return True
    return any(s in lower for s in CALCULATION_SUBJECTS)


def build_prompts(subject: str, count: int, difficulty: str, is_calculation: bool) -> tuple[str, str]:
    """Return (system, user) prompts."""
    system = SYSTEM_PROMPT.format(
        count=count,
        subject=subject,
        difficulty=difficulty,
        guidance=DIFFICULTY_GUIDANCE[difficulty],
        calculation_instructions=CALCULATION_INSTRUCTIONS if is_calculation else "",
    )
    user = USER_PROMPT.format(count=count, difficulty=difficulty, subject=subject)
    if is_calculation:
        user += " These should be calculation-based problems requiring numerical solutions."
    return system, user


def strip_fences(raw: str) -> str:
    return _FENCE_RE.sub("", raw).replace("```", "").strip()


def parse_questions(raw: str) -> list:
    """Parse the model output into a non-empty list, or raise QuestionGenerationError."""
    if not raw or not raw.strip():
        raise QuestionGenerationError("No content in AI response")
    try:
        parsed = json.loads(strip_fences(raw))
    except json.JSONDecodeError as e:
        raise QuestionGenerationError("Failed to parse generated questions") from e
    if isinstance(parsed, dict) and isinstance(parsed.get("questions"), list):
        parsed = parsed["questions"]
    if not isinstance(parsed, list) or not parsed:
        raise QuestionGenerationError("Invalid questions format")
    return parsed


def _coerce_options(options) -> list[str]:
    if not isinstance(options, list):
        return list(OPTION_PLACEHOLDERS)
    cleaned = [str(o) for o in options[:4]]
    while len(cleaned) < 4:
        cleaned.append(OPTION_PLACEHOLDERS[len(cleaned)])
    return cleaned


def _coerce_answer(answer) -> int:
    # bool is an int subclass; True is not a valid option index
    if isinstance(answer, bool) or not isinstance(answer, int):
        return 0
    return answer if 0 <= answer <= 3 else 0


def coerce_questions(items: list) -> list[ChallengeQuestion]:
    questions = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            item = {}
        questions.append(ChallengeQuestion(
            question=str(item.get("question") or f"Question {idx + 1}"),
            options=_coerce_options(item.get("options")),
            answer=_coerce_answer(item.get("answer")),
            explanation=str(item.get("explanation") or NO_EXPLANATION),
        ))
    return questions


class QuestionGenAgent:
    """Generates the question set stored on a new challenge."""

    AGENT_NAME = "question_gen_agent"

    def __init__(self, openai_key: str = "", anthropic_key: str = "",
                 model: str = "gpt-4o-mini",
                 fallback_model: str = "claude-sonnet-4-20250514") -> None:
        self._providers: list[tuple[str, str, str]] = []
        if openai_key:
            self._providers.append(("openai", model, openai_key))
        if anthropic_key:
            self._providers.append(("anthropic", fallback_model, anthropic_key))

    @classmethod
    def from_config(cls, config) -> QuestionGenAgent:
        return cls(
            openai_key=config.get("OPENAI_API_KEY", ""),
            anthropic_key=config.get("ANTHROPIC_API_KEY", ""),
            model=config.get("QUESTION_MODEL", "gpt-4o-mini"),
            fallback_model=config.get("QUESTION_FALLBACK_MODEL", "claude-sonnet-4-20250514"),
        )

    @property
    def available(self) -> bool:
        return bool(self._providers)

    def generate(self, subject: str, duration_seconds: int, host_streak: int = 0) -> QuestionSet:
        if not self._providers:
            raise ProviderUnavailableError("No LLM provider is configured")

        count = question_count(duration_seconds)
        difficulty = difficulty_for_streak(host_streak or 0, duration_seconds)
        calc = is_calculation_subject(subject)
        system, user = build_prompts(subject, count, difficulty, calc)
        logger.info(
            "Generating challenge questions: subject=%s duration=%s streak=%s difficulty=%s count=%d",
            subject, duration_seconds, host_streak, difficulty, count,
        )

        raw, metrics = self._call_llm(system, user)
        questions = coerce_questions(parse_questions(raw))
        logger.info("Generated %d questions (calculation=%s, provider=%s)",
                    len(questions), calc, metrics.get("provider"))
        return QuestionSet(questions=questions, difficulty=difficulty,
                           is_calculation=calc, metadata=metrics)

    def _call_llm(self, system: str, user: str) -> tuple[str, dict]:
        """Try each configured provider in order; raise the last error."""
        last_error: Exception | None = None
        for provider, model, key in self._providers:
            try:
                return resilient_llm_call(provider, model, user, system=system, api_key=key)
            except Exception as e:
                logger.warning("Question generation via %s failed: %s", provider, e)
                last_error = e
        raise QuestionGenerationError(f"All providers failed: {last_error}") from last_error


def generate_challenge_questions(subject: str, duration_seconds: int, host_streak: int = 0,
                                 config=None) -> QuestionSet:
    """Convenience wrapper reading keys from the current app config."""
    if config is None:
        from flask import current_app
        config = current_app.config
    return QuestionGenAgent.from_config(config).generate(subject, duration_seconds, host_streak)
