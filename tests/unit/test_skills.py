"""Tests for the shared skill table and quest target matching."""

import pytest

from prepstate.events.schemas import Source, Subject
from prepstate.events.skills import (
    domain_for_skill,
    parse_subject_label,
    skill_key,
    skills_match,
    subject_for_skill,
)


class TestSkillKey:
    def test_case_and_separators_collapse(self):
        assert skill_key("Ratios, Rates & Units") == skill_key("ratios rates units")
        assert skill_key("  Cross-Text   Connections ") == "cross text connections"


class TestSubjectForSkill:
    @pytest.mark.parametrize(
        ("skill", "expected"),
        [
            ("Algebra", Subject.MATH),
            ("Linear functions", Subject.MATH),
            ("Words in Context", Subject.VERBAL),
            ("Boundaries", Subject.VERBAL),
            ("Reading comprehension", Subject.VERBAL),
            ("Exponential growth", Subject.MATH),
            ("Something unheard of", Subject.MATH),
        ],
    )
    def test_subjects(self, skill, expected):
        assert subject_for_skill(skill) == expected

    def test_deterministic_across_spellings(self):
        assert subject_for_skill("WORDS_IN_CONTEXT") == subject_for_skill("words in context")


class TestParseSubjectLabel:
    def test_labels(self):
        assert parse_subject_label("Math") == Subject.MATH
        assert parse_subject_label("Reading and Writing") == Subject.VERBAL
        assert parse_subject_label(None) is None
        assert parse_subject_label("chemistry") is None


class TestSkillsMatch:
    def test_identical_keys(self):
        assert skills_match("Algebra", "algebra")

    def test_domain_covers_skill(self):
        assert domain_for_skill("Linear functions") == "algebra"
        assert skills_match("Algebra", "Linear functions")
        assert not skills_match("Algebra", "Circles")

    def test_target_words_subset(self):
        assert skills_match("Linear equations", "Linear equations in one variable")
        assert not skills_match("Linear equations in one variable", "Linear equations")

    def test_subject_alias_uses_event_subject(self):
        assert skills_match("Math", "Circles")
        assert not skills_match("Math", "Transitions")
        assert skills_match("Reading and Writing", "Transitions", Subject.VERBAL)
        assert skills_match("Math", "Mystery topic", Subject.MATH)
        assert not skills_match("Math", "Mystery topic", Subject.VERBAL)

    def test_general_practice_covers_both_subjects(self):
        assert skills_match("General Practice", "Circles")
        assert skills_match("General Practice", "Transitions")

    def test_source_alias_requires_matching_session(self):
        assert skills_match("Marathon", "Circles", Subject.MATH, Source.MARATHON)
        assert not skills_match("Marathon", "Circles", Subject.MATH, Source.DRILL)
        assert skills_match("Mock Test", "Transitions", Subject.VERBAL, Source.MOCK_TEST)
        assert skills_match("Quiz mode", "Algebra", Subject.MATH, Source.QUIZ)

    def test_empty_never_matches(self):
        assert not skills_match("", "Algebra")
        assert not skills_match("Algebra", "  ")
