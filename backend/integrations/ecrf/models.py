"""
Typed records returned by the remote eCRF platform.

The platform itself speaks loosely-typed XML; the client converts every
response into one of these before it reaches the engine.
"""

from dataclasses import dataclass, field
from datetime import date

from integrations.ecrf.questions import Question


@dataclass(frozen=True)
class RemoteTeam:
    team_id: int
    code: str
    name: str


@dataclass(frozen=True)
class RemoteSubscription:
    subscription_id: str
    program_code: str
    team_code: str


@dataclass
class ContactData:
    """Personal data pushed when a case is created or its contact updated."""

    birthdate: date | str | None = None
    gender: str = ""
    identifiers: dict[str, str] = field(default_factory=dict)


@dataclass
class RemoteCase:
    case_id: str
    birthdate: str | None = None
    gender: str = ""
    identifiers: dict[str, str] = field(default_factory=dict)


@dataclass
class RemoteAdmission:
    admission_id: str
    case_id: str
    subscription_id: str
    program_code: str


@dataclass
class RemoteForm:
    form_id: str
    form_code: str
    task_id: str
    questions: list[Question] = field(default_factory=list)

    def find_question(self, item_code: str) -> Question | None:
        for question in self.questions:
            if question.item_code == item_code and question.array_ref is None:
                return question
        return None


@dataclass
class RemoteTask:
    task_id: str
    task_code: str
    admission_id: str
    case_id: str | None = None
    forms: list[RemoteForm] = field(default_factory=list)

    def find_form(self, form_code: str) -> RemoteForm | None:
        for form in self.forms:
            if form.form_code == form_code:
                return form
        return None
