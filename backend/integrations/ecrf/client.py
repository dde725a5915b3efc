"""
eCRF Client — Abstract Base Class

Every component that talks to the remote eCRF platform (the tracking
synchronizer, the patient-data import, the location directory) goes
through this interface, so the engine never depends on the wire protocol.

Implementations:
  - integrations.ecrf.soap.SoapECRFClient   (production, httpx + SOAP)
  - tests/fakes.py FakeECRFClient           (in-memory, tests)

Lifecycle:
    1. open()    — start the remote session (login)
    2. ...calls  — any of the operations below
    3. close()   — end the session and release the HTTP connection pool
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime

import structlog

from integrations.ecrf.models import (
    ContactData,
    RemoteAdmission,
    RemoteCase,
    RemoteForm,
    RemoteSubscription,
    RemoteTask,
    RemoteTeam,
)
from integrations.ecrf.questions import Question

logger = structlog.get_logger()


class ECRFClient(ABC):
    """
    Coarse, session-based client for the remote eCRF platform.

    Every method raises `core.errors.ECRFError` when the platform reports
    an error; nothing is retried at this level except opening the session.
    """

    def __init__(self, user: str | None = None):
        self.user = user
        self.logger = logger.bind(ecrf_client=type(self).__name__, ecrf_user=user)

    async def open(self) -> None:
        """Start the remote session. No-op by default."""

    async def close(self) -> None:
        """End the remote session. No-op by default."""

    async def __aenter__(self) -> "ECRFClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ── Directory ─────────────────────────────────────────────────────

    @abstractmethod
    async def team_get(self, team_code: str) -> RemoteTeam:
        ...

    @abstractmethod
    async def subscription_get(self, program_code: str, team_code: str) -> RemoteSubscription:
        ...

    # ── Cases & admissions ────────────────────────────────────────────

    @abstractmethod
    async def case_search(self, reference: str) -> list[RemoteCase]:
        ...

    @abstractmethod
    async def case_insert(self, contact: ContactData) -> RemoteCase:
        ...

    @abstractmethod
    async def case_set_contact(self, case_id: str, contact: ContactData) -> None:
        ...

    @abstractmethod
    async def case_admission_list(self, case_id: str) -> list[RemoteAdmission]:
        ...

    @abstractmethod
    async def admission_create(self, case_id: str, subscription_id: str, admission_date: datetime) -> RemoteAdmission:
        ...

    # ── Tasks & forms ─────────────────────────────────────────────────

    @abstractmethod
    async def task_list(self, admission_id: str, task_code: str) -> list[RemoteTask]:
        """Tasks of an admission with the given task code, newest first."""
        ...

    @abstractmethod
    async def task_insert_by_task_code(self, admission_id: str, task_code: str) -> str:
        """Create a task and return its id."""
        ...

    @abstractmethod
    async def task_get(self, task_id: str) -> RemoteTask:
        ...

    @abstractmethod
    async def task_delete(self, task_id: str) -> None:
        ...

    @abstractmethod
    async def form_insert(self, task_id: str, form_code: str) -> str:
        """Create a form inside a task and return its id."""
        ...

    @abstractmethod
    async def form_get_summary(self, form_id: str) -> RemoteForm:
        ...

    @abstractmethod
    async def form_set_all_answers(self, form_id: str, questions: Sequence[Question], close_form: bool) -> None:
        ...
