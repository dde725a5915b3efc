"""
Uniform response contract for every entry point.

  - ServiceResponse:            { data | null, error | null }
  - BackgroundServiceResponse:  { code: idle|success|error, message, details[] }

Batch operations never return a bare exception: the background envelope always
carries a status plus enough per-item detail to know which records need
attention on the next run.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from core.errors import ServiceError


class ErrorDetail(BaseModel):
    code: str
    message: str


class ServiceResponse(BaseModel):
    data: Any = None
    error: ErrorDetail | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "ServiceResponse":
        return cls(data=data)

    @classmethod
    def from_error(cls, exc: ServiceError) -> "ServiceResponse":
        return cls(error=ErrorDetail(code=exc.code.value, message=exc.message))


class BackgroundStatus(str, Enum):
    IDLE = "idle"
    SUCCESS = "success"
    ERROR = "error"


class BackgroundServiceResponse(BaseModel):
    code: BackgroundStatus = BackgroundStatus.IDLE
    message: str = ""
    details: list[str] = Field(default_factory=list)

    def add_details(self, line: str) -> None:
        self.details.append(line)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
