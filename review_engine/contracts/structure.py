"""
Assessment Structure
====================

The framework skeleton an assessment answers: sections contain categories,
categories contain questions, questions offer numbered options.

The engine needs the structure for three things only:
- validating submitted values against a question's options
- rounding an averaged consensus to a valid option value
- computing coverage of a role's assigned scope
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from .base import ConsensusMethod


# Default maturity scale (0 = not implemented ... 4 = optimized)
DEFAULT_OPTION_VALUES: Tuple[int, ...] = (0, 1, 2, 3, 4)


@dataclass(frozen=True)
class QuestionOption:
    value: int
    label: str = ""


@dataclass(frozen=True)
class Question:
    question_id: str
    options: Tuple[QuestionOption, ...] = field(default_factory=tuple)
    consensus_method: Optional[ConsensusMethod] = None
    priority: str = "medium"

    @property
    def option_values(self) -> Tuple[int, ...]:
        if not self.options:
            return DEFAULT_OPTION_VALUES
        return tuple(sorted({o.value for o in self.options}))


@dataclass(frozen=True)
class Category:
    category_id: str
    questions: Tuple[Question, ...] = field(default_factory=tuple)
    weight: float = 1.0


@dataclass(frozen=True)
class Section:
    section_id: str
    categories: Tuple[Category, ...] = field(default_factory=tuple)
    weight: float = 1.0


@dataclass(frozen=True)
class QuestionLocation:
    """Where a question sits in the structure."""
    question: Question
    category_id: str
    section_id: str


@dataclass(frozen=True)
class AssessmentStructure:
    """
    Immutable framework structure.

    Lookups are computed from the tuples; the index is built once per
    instance and cached on the frozen object.
    """
    framework_id: str
    sections: Tuple[Section, ...] = field(default_factory=tuple)

    def __post_init__(self):
        index: Dict[str, QuestionLocation] = {}
        for section in self.sections:
            for category in section.categories:
                for question in category.questions:
                    if question.question_id in index:
                        raise ValueError(f"Duplicate question id {question.question_id}")
                    index[question.question_id] = QuestionLocation(
                        question=question,
                        category_id=category.category_id,
                        section_id=section.section_id,
                    )
        object.__setattr__(self, '_index', index)

    @property
    def total_questions(self) -> int:
        return len(self._index)

    @property
    def max_option_value(self) -> int:
        values = [max(loc.question.option_values) for loc in self._index.values()]
        return max(values) if values else max(DEFAULT_OPTION_VALUES)

    def has_question(self, question_id: str) -> bool:
        return question_id in self._index

    def locate(self, question_id: str) -> Optional[QuestionLocation]:
        return self._index.get(question_id)

    def valid_values(self, question_id: str) -> Tuple[int, ...]:
        location = self._index.get(question_id)
        if location is None:
            return DEFAULT_OPTION_VALUES
        return location.question.option_values

    def method_for(self, question_id: str, default: ConsensusMethod) -> ConsensusMethod:
        location = self._index.get(question_id)
        if location is None or location.question.consensus_method is None:
            return default
        return location.question.consensus_method

    def section(self, section_id: str) -> Optional[Section]:
        for section in self.sections:
            if section.section_id == section_id:
                return section
        return None

    def questions_in_scope(
        self,
        sections: Iterable[str],
        categories: Iterable[str]
    ) -> FrozenSet[str]:
        """Questions covered by a set of assigned sections and categories."""
        section_set = set(sections)
        category_set = set(categories)
        return frozenset(
            qid for qid, loc in self._index.items()
            if loc.section_id in section_set or loc.category_id in category_set
        )

    @staticmethod
    def uniform(
        framework_id: str,
        layout: Dict[str, Dict[str, Iterable[str]]]
    ) -> AssessmentStructure:
        """
        Build a structure from a nested {section: {category: [question ids]}}
        mapping, every question on the default scale.
        """
        return AssessmentStructure(
            framework_id=framework_id,
            sections=tuple(
                Section(
                    section_id=section_id,
                    categories=tuple(
                        Category(
                            category_id=category_id,
                            questions=tuple(Question(question_id=q) for q in questions),
                        )
                        for category_id, questions in categories.items()
                    ),
                )
                for section_id, categories in layout.items()
            ),
        )
