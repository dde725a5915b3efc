"""
Per-invocation eCRF context.

Holds the client plus lookups that are expensive and stable for the length
of one batch run (the project subscription id, admissions per case). A new
context is built for every invocation, so nothing is shared between
concurrent runs.
"""

from dataclasses import dataclass, field

import structlog

from core.config import Settings, get_settings
from core.errors import ECRFError, ErrorCode, ServiceError
from integrations.ecrf.client import ECRFClient
from integrations.ecrf.models import RemoteAdmission

logger = structlog.get_logger()


@dataclass
class ECRFContext:
    client: ECRFClient
    settings: Settings = field(default_factory=get_settings)
    _subscription_id: str | None = field(default=None, init=False, repr=False)
    _admissions: dict[str, RemoteAdmission | None] = field(default_factory=dict, init=False, repr=False)

    @property
    def project_code(self) -> str:
        return self.settings.project_code

    @property
    def team_code(self) -> str:
        return self.settings.team_code

    async def subscription_id(self) -> str:
        """The project subscription id, fetched on first use."""
        if self._subscription_id is None:
            try:
                subscription = await self.client.subscription_get(self.project_code, self.team_code)
            except ECRFError as exc:
                raise ServiceError(
                    ErrorCode.DATA_MISSING,
                    f"Unable to find subscription for project {self.project_code}, team {self.team_code}. "
                    f"Please check the configuration of the service. Error: {exc.message}",
                ) from exc
            self._subscription_id = subscription.subscription_id
            logger.debug("ecrf.subscription_resolved", subscription_id=self._subscription_id)
        return self._subscription_id

    async def find_admission(self, case_id: str) -> RemoteAdmission | None:
        """The case's admission in the configured project, if any."""
        if case_id not in self._admissions:
            admissions = await self.client.case_admission_list(case_id)
            self._admissions[case_id] = next(
                (adm for adm in admissions if adm.program_code == self.project_code),
                None,
            )
        return self._admissions[case_id]

    def remember_admission(self, admission: RemoteAdmission) -> None:
        self._admissions[admission.case_id] = admission
