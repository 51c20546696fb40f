"""Pydantic schemas for inspection payloads exchanged with the sync endpoint."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

__all__ = [
    "InspectionPayload",
    "SyncInspection",
    "SyncRequest",
    "InspectionValidationError",
    "validate_inspection",
    "validate_sync_request",
]

InspectionTipo = Literal["entrada", "saida", "manutencao"]
InspectionStatusValue = Literal["pending", "synced", "error"]


class InspectionValidationError(Exception):
    """Raised when an inspection payload is malformed. Never retried."""

    def __init__(self, errors: list[dict]):
        self.errors = errors
        details = ", ".join(f"{e['path']}: {e['message']}" for e in errors)
        super().__init__(f"Invalid inspection data: {details}")


class InspectionPayload(BaseModel):
    """Complete inspection as checked on the device before upload."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    empresaId: str = Field(min_length=1)
    vistoriadorId: str = Field(min_length=1)
    imovelId: str = Field(min_length=1)
    tipo: InspectionTipo
    fotos: list[str] = Field(default_factory=list)
    checklist: dict[str, str]
    observacoes: Optional[str] = None
    createdAt: datetime
    status: InspectionStatusValue

    @field_validator("fotos")
    @classmethod
    def photos_not_blank(cls, value: list[str]) -> list[str]:
        if any(not uri.strip() for uri in value):
            raise ValueError("photo URI must not be blank")
        return value


class SyncInspection(BaseModel):
    """Inspection as accepted by ``POST /sync`` (looser than the device check)."""

    model_config = ConfigDict(extra="allow")

    id: str
    empresaId: str
    imovelId: str
    tipo: InspectionTipo
    fotos: list[str] = Field(default_factory=list)
    checklist: Optional[dict[str, str]] = None
    observacoes: Optional[str] = None
    createdAt: str
    status: InspectionStatusValue


class SyncRequest(BaseModel):
    """Body of ``POST /sync``."""

    pendingInspections: list[SyncInspection]
    vistoriadorId: str = Field(min_length=1)
    empresaId: str = Field(min_length=1)
    deviceInfo: Optional[dict] = None


def _to_errors(exc: ValidationError) -> list[dict]:
    return [
        {"path": ".".join(str(p) for p in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]


def validate_inspection(payload: dict) -> InspectionPayload:
    """Validate an inspection payload before it is uploaded.

    Raises:
        InspectionValidationError: With one ``path``/``message`` entry per problem
    """
    try:
        return InspectionPayload.model_validate(payload)
    except ValidationError as e:
        raise InspectionValidationError(_to_errors(e)) from e


def validate_sync_request(body: dict) -> SyncRequest:
    """Validate a ``POST /sync`` body on the server side."""
    try:
        return SyncRequest.model_validate(body)
    except ValidationError as e:
        raise InspectionValidationError(_to_errors(e)) from e
