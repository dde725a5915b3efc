"""
Remote eCRF platform boundary.

Usage:
    from integrations.ecrf import get_ecrf_client

    async with get_ecrf_client() as client:
        team = await client.team_get("ONCOIVD_LAB")
"""

from core.config import Settings, get_settings
from integrations.ecrf.client import ECRFClient
from integrations.ecrf.models import (
    ContactData,
    RemoteAdmission,
    RemoteCase,
    RemoteForm,
    RemoteSubscription,
    RemoteTask,
    RemoteTeam,
)
from integrations.ecrf.questions import (
    MultiOptionQuestion,
    Question,
    QuestionType,
    SingleOptionQuestion,
    TextQuestion,
    question_for,
)
from integrations.ecrf.soap import SoapECRFClient


def get_ecrf_client(settings: Settings | None = None) -> ECRFClient:
    """Factory: the production client configured from settings."""
    return SoapECRFClient(settings or get_settings())


__all__ = [
    "ECRFClient",
    "SoapECRFClient",
    "get_ecrf_client",
    "ContactData",
    "RemoteAdmission",
    "RemoteCase",
    "RemoteForm",
    "RemoteSubscription",
    "RemoteTask",
    "RemoteTeam",
    "Question",
    "QuestionType",
    "TextQuestion",
    "SingleOptionQuestion",
    "MultiOptionQuestion",
    "question_for",
]
