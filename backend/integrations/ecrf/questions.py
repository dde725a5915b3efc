"""
Question variants written into remote forms.

A question is exactly one of:
  - TextQuestion:          scalar answer (TEXT, TEXT_AREA, DATE, NUMERICAL)
  - SingleOptionQuestion:  one option chosen by value (BOOLEAN, VERTICAL_RADIO)
  - MultiOptionQuestion:   several options chosen by id (VERTICAL_CHECK)

`question_for` picks the variant from the question type tag alone.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any


class QuestionType(str, Enum):
    BOOLEAN = "BOOLEAN"
    VERTICAL_RADIO = "VERTICAL_RADIO"
    VERTICAL_CHECK = "VERTICAL_CHECK"
    TEXT = "TEXT"
    TEXT_AREA = "TEXT_AREA"
    DATE = "DATE"
    NUMERICAL = "NUMERICAL"
    ARRAY = "ARRAY"


SCALAR_TYPES = frozenset({QuestionType.TEXT, QuestionType.TEXT_AREA, QuestionType.DATE, QuestionType.NUMERICAL})
SINGLE_OPTION_TYPES = frozenset({QuestionType.BOOLEAN, QuestionType.VERTICAL_RADIO})
MULTI_OPTION_TYPES = frozenset({QuestionType.VERTICAL_CHECK})


@dataclass(frozen=True, kw_only=True)
class Question(ABC):
    item_code: str
    question_type: QuestionType
    array_ref: str | None = None
    row: int | None = None

    @property
    @abstractmethod
    def answer(self) -> str | None:
        """The answer as plain text (option ids joined with `|`)."""

    @abstractmethod
    def to_wire(self) -> dict[str, Any]:
        """The SOAP payload for this answer."""


@dataclass(frozen=True, kw_only=True)
class TextQuestion(Question):
    value: str | None = None

    @property
    def answer(self) -> str | None:
        return self.value

    def to_wire(self) -> dict[str, Any]:
        return _wire(self, value=self.value, option_id=None)


@dataclass(frozen=True, kw_only=True)
class SingleOptionQuestion(Question):
    option_value: str | None = None

    @property
    def answer(self) -> str | None:
        return self.option_value

    def to_wire(self) -> dict[str, Any]:
        return _wire(self, value=self.option_value, option_id=None)


@dataclass(frozen=True, kw_only=True)
class MultiOptionQuestion(Question):
    option_ids: tuple[str, ...] = ()

    @property
    def answer(self) -> str | None:
        return "|".join(self.option_ids) or None

    def to_wire(self) -> dict[str, Any]:
        return _wire(self, value=None, option_id="|".join(self.option_ids))


def _wire(question: Question, value: str | None, option_id: str | None) -> dict[str, Any]:
    return {
        "item_code": question.item_code,
        "type": question.question_type.value,
        "value": value,
        "option_id": option_id,
        "array_ref": question.array_ref,
        "row": question.row,
    }


def _as_text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def question_for(
    question_type: QuestionType | str,
    item_code: str,
    value: Any,
    array_ref: str | None = None,
    row: int | None = None,
) -> Question:
    """Build the question variant that matches `question_type`."""
    qtype = QuestionType(question_type)
    common = {"item_code": item_code, "question_type": qtype, "array_ref": array_ref, "row": row}

    if qtype in MULTI_OPTION_TYPES:
        if value is None or value == "":
            ids: tuple[str, ...] = ()
        elif isinstance(value, (list, tuple)):
            ids = tuple(str(v) for v in value)
        else:
            ids = tuple(str(value).split("|"))
        return MultiOptionQuestion(option_ids=ids, **common)
    if qtype in SINGLE_OPTION_TYPES:
        return SingleOptionQuestion(option_value=_as_text(value), **common)
    if qtype in SCALAR_TYPES:
        return TextQuestion(value=_as_text(value), **common)
    raise ValueError(f"Question type {qtype.value} has no answer of its own")
