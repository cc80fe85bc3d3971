"""Shared skill-name table.

The normalizer, mastery grouping, the streak calendar and quest matching
all resolve skill names through this module, so subject assignment and
skill matching can never disagree between them.

Resolution order for a subject:
  1. exact normalized key in SKILL_TABLE
  2. verbal keyword in the key
  3. math keyword in the key
  4. math
"""

from __future__ import annotations

import re

from prepstate.events.schemas import Source, Subject

_SEPARATORS = re.compile(r"[\s_\-/&,.:;()]+")

# normalized skill key -> (subject, domain key)
SKILL_TABLE: dict[str, tuple[Subject, str]] = {
    # Math: Algebra
    "algebra": (Subject.MATH, "algebra"),
    "linear equations in one variable": (Subject.MATH, "algebra"),
    "linear equations in two variables": (Subject.MATH, "algebra"),
    "linear functions": (Subject.MATH, "algebra"),
    "systems of two linear equations in two variables": (Subject.MATH, "algebra"),
    "linear inequalities in one or two variables": (Subject.MATH, "algebra"),
    # Math: Advanced Math
    "advanced math": (Subject.MATH, "advanced math"),
    "equivalent expressions": (Subject.MATH, "advanced math"),
    "nonlinear equations in one variable and systems of equations in two variables": (Subject.MATH, "advanced math"),
    "nonlinear functions": (Subject.MATH, "advanced math"),
    # Math: Problem-Solving and Data Analysis
    "problem solving and data analysis": (Subject.MATH, "problem solving and data analysis"),
    "ratios rates proportional relationships and units": (Subject.MATH, "problem solving and data analysis"),
    "percentages": (Subject.MATH, "problem solving and data analysis"),
    "one variable data distributions and measures of center and spread": (Subject.MATH, "problem solving and data analysis"),
    "two variable data models and scatterplots": (Subject.MATH, "problem solving and data analysis"),
    "probability and conditional probability": (Subject.MATH, "problem solving and data analysis"),
    "inference from sample statistics and margin of error": (Subject.MATH, "problem solving and data analysis"),
    "evaluating statistical claims observational studies and experiments": (Subject.MATH, "problem solving and data analysis"),
    # Math: Geometry and Trigonometry
    "geometry and trigonometry": (Subject.MATH, "geometry and trigonometry"),
    "area and volume": (Subject.MATH, "geometry and trigonometry"),
    "lines angles and triangles": (Subject.MATH, "geometry and trigonometry"),
    "right triangles and trigonometry": (Subject.MATH, "geometry and trigonometry"),
    "circles": (Subject.MATH, "geometry and trigonometry"),
    # Verbal: Information and Ideas
    "information and ideas": (Subject.VERBAL, "information and ideas"),
    "central ideas and details": (Subject.VERBAL, "information and ideas"),
    "command of evidence": (Subject.VERBAL, "information and ideas"),
    "inferences": (Subject.VERBAL, "information and ideas"),
    # Verbal: Craft and Structure
    "craft and structure": (Subject.VERBAL, "craft and structure"),
    "words in context": (Subject.VERBAL, "craft and structure"),
    "text structure and purpose": (Subject.VERBAL, "craft and structure"),
    "cross text connections": (Subject.VERBAL, "craft and structure"),
    # Verbal: Expression of Ideas
    "expression of ideas": (Subject.VERBAL, "expression of ideas"),
    "rhetorical synthesis": (Subject.VERBAL, "expression of ideas"),
    "transitions": (Subject.VERBAL, "expression of ideas"),
    # Verbal: Standard English Conventions
    "standard english conventions": (Subject.VERBAL, "standard english conventions"),
    "boundaries": (Subject.VERBAL, "standard english conventions"),
    "form structure and sense": (Subject.VERBAL, "standard english conventions"),
}

VERBAL_KEYWORDS: tuple[str, ...] = (
    "reading", "writing", "verbal", "english", "grammar", "vocabulary", "word",
    "evidence", "inference", "rhetoric", "transition", "punctuation", "text",
    "passage", "sentence", "idea",
)

MATH_KEYWORDS: tuple[str, ...] = (
    "math", "algebra", "equation", "function", "geometry", "trigonometry",
    "linear", "quadratic", "polynomial", "exponent", "percent", "probability",
    "ratio", "statistic", "data", "circle", "triangle", "angle", "expression",
    "area", "volume", "inequalit",
)

# Quest targets that cover a whole subject (or both) rather than one skill.
SUBJECT_ALIASES: dict[str, frozenset[Subject]] = {
    "math": frozenset({Subject.MATH}),
    "mathematics": frozenset({Subject.MATH}),
    "verbal": frozenset({Subject.VERBAL}),
    "english": frozenset({Subject.VERBAL}),
    "reading": frozenset({Subject.VERBAL}),
    "writing": frozenset({Subject.VERBAL}),
    "reading and writing": frozenset({Subject.VERBAL}),
    "practice": frozenset({Subject.MATH, Subject.VERBAL}),
    "general practice": frozenset({Subject.MATH, Subject.VERBAL}),
}

# Quest targets that count attempts from one kind of session.
SOURCE_ALIASES: dict[str, Source] = {
    "quiz": Source.QUIZ,
    "quiz mode": Source.QUIZ,
    "marathon": Source.MARATHON,
    "mock test": Source.MOCK_TEST,
    "mocktest": Source.MOCK_TEST,
    "drill": Source.DRILL,
}

# Raw subject labels seen in attempt records.
SUBJECT_LABELS: dict[str, Subject] = {
    "math": Subject.MATH,
    "mathematics": Subject.MATH,
    "verbal": Subject.VERBAL,
    "english": Subject.VERBAL,
    "reading": Subject.VERBAL,
    "writing": Subject.VERBAL,
    "reading and writing": Subject.VERBAL,
}


def skill_key(name: str) -> str:
    """Case-folded, separator-collapsed key for a skill name."""
    return _SEPARATORS.sub(" ", name.casefold()).strip()


def subject_for_skill(name: str) -> Subject:
    """Deterministic subject for a skill name."""
    key = skill_key(name)
    entry = SKILL_TABLE.get(key)
    if entry is not None:
        return entry[0]
    if key in SUBJECT_LABELS:
        return SUBJECT_LABELS[key]
    if any(word in key for word in VERBAL_KEYWORDS):
        return Subject.VERBAL
    if any(word in key for word in MATH_KEYWORDS):
        return Subject.MATH
    return Subject.MATH


def parse_subject_label(label: str | None) -> Subject | None:
    """Map a raw subject label ("Math", "Reading and Writing", ...) to a Subject."""
    if not label:
        return None
    return SUBJECT_LABELS.get(skill_key(label))


def domain_for_skill(name: str) -> str | None:
    entry = SKILL_TABLE.get(skill_key(name))
    return entry[1] if entry else None


def skills_match(
    target_skill: str,
    event_skill: str,
    event_subject: Subject | None = None,
    event_source: Source | None = None,
) -> bool:
    """Whether an event on ``event_skill`` counts toward a quest on ``target_skill``.

    Matches, in order: identical keys; session-type targets ("Marathon",
    "Mock Test") against the event's source; subject-wide aliases ("Math",
    "Reading", "General Practice"); a domain target covering the event's
    skill ("Algebra" covers "Linear functions"); all target words present
    in the event name. Pass the event's own subject so alias matching uses
    the subject the normalizer assigned.
    """
    target = skill_key(target_skill)
    event = skill_key(event_skill)
    if not target or not event:
        return False
    if target == event:
        return True

    source = SOURCE_ALIASES.get(target)
    if source is not None:
        return event_source == source

    subjects = SUBJECT_ALIASES.get(target)
    if subjects is not None:
        return (event_subject or subject_for_skill(event_skill)) in subjects

    if domain_for_skill(event_skill) == target:
        return True

    return set(target.split()) <= set(event.split())
