"""Data model for inspections held in the offline queue."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

__all__ = [
    "InspectionStatus",
    "Photo",
    "Inspection",
    "SyncStatusSnapshot",
    "format_timestamp",
    "parse_timestamp",
]


class InspectionStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


LOCAL_URI_PREFIXES = ("file://", "data:image", "/")


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime as an ISO 8601 UTC string ending in ``Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 string (``Z`` suffix allowed) into an aware datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Photo:
    """A photo attached to an inspection."""

    uri: str
    descricao: Optional[str] = None

    @property
    def is_local(self) -> bool:
        """True while the photo still lives on the device."""
        return self.uri.startswith(LOCAL_URI_PREFIXES)

    @property
    def local_path(self) -> Optional[str]:
        """Filesystem path for ``file://`` and bare-path URIs."""
        if self.uri.startswith("file://"):
            return self.uri[len("file://"):]
        if self.uri.startswith("/"):
            return self.uri
        return None

    def to_dict(self) -> dict:
        data = {"uri": self.uri}
        if self.descricao:
            data["descricao"] = self.descricao
        return data

    @classmethod
    def from_value(cls, value) -> "Photo":
        """Accept either a plain URI string or a ``{"uri": ...}`` mapping."""
        if isinstance(value, str):
            return cls(uri=value)
        return cls(uri=value["uri"], descricao=value.get("descricao"))


@dataclass
class Inspection:
    """An inspection (vistoria) captured on the device.

    ``id`` is generated once on the device and doubles as the idempotency
    key for the remote sync endpoint.
    """

    id: str
    empresa_id: str
    vistoriador_id: str
    imovel_id: str
    tipo: str
    fotos: list[Photo] = field(default_factory=list)
    checklist: dict[str, str] = field(default_factory=dict)
    observacoes: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: InspectionStatus = InspectionStatus.PENDING
    cloud_id: Optional[str] = None
    synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    attempts: int = 0

    @classmethod
    def new(
        cls,
        empresa_id: str,
        vistoriador_id: str,
        imovel_id: str,
        tipo: str,
        fotos: Optional[list] = None,
        checklist: Optional[dict[str, str]] = None,
        observacoes: Optional[str] = None,
    ) -> "Inspection":
        """Create a fresh pending inspection with a newly generated id."""
        return cls(
            id=str(uuid.uuid4()),
            empresa_id=empresa_id,
            vistoriador_id=vistoriador_id,
            imovel_id=imovel_id,
            tipo=tipo,
            fotos=[Photo.from_value(f) for f in (fotos or [])],
            checklist=dict(checklist or {}),
            observacoes=observacoes,
        )

    @property
    def local_photos(self) -> list[Photo]:
        return [p for p in self.fotos if p.is_local]

    def to_payload(self, photo_urls: Optional[list[str]] = None) -> dict:
        """Wire form sent to the remote sync endpoint."""
        payload = {
            "id": self.id,
            "empresaId": self.empresa_id,
            "vistoriadorId": self.vistoriador_id,
            "imovelId": self.imovel_id,
            "tipo": self.tipo,
            "fotos": photo_urls if photo_urls is not None else [p.uri for p in self.fotos],
            "checklist": self.checklist,
            "createdAt": format_timestamp(self.created_at),
            "status": self.status.value,
        }
        if self.observacoes:
            payload["observacoes"] = self.observacoes
        return payload

    def to_dict(self) -> dict:
        """Storage form of the user-entered data (status columns excluded)."""
        return {
            "empresa_id": self.empresa_id,
            "vistoriador_id": self.vistoriador_id,
            "imovel_id": self.imovel_id,
            "tipo": self.tipo,
            "fotos": [p.to_dict() for p in self.fotos],
            "checklist": self.checklist,
            "observacoes": self.observacoes,
        }

    @classmethod
    def from_row(cls, row) -> "Inspection":
        """Create from a queue database row."""
        data = json.loads(row["data"])
        return cls(
            id=row["id"],
            empresa_id=data["empresa_id"],
            vistoriador_id=data["vistoriador_id"],
            imovel_id=data["imovel_id"],
            tipo=data["tipo"],
            fotos=[Photo.from_value(p) for p in data.get("fotos", [])],
            checklist=data.get("checklist") or {},
            observacoes=data.get("observacoes"),
            created_at=parse_timestamp(row["created_at"]),
            status=InspectionStatus(row["status"]),
            cloud_id=row["cloud_id"],
            synced_at=parse_timestamp(row["synced_at"]),
            last_error=row["last_error"],
            attempts=row["attempts"],
        )


@dataclass
class SyncStatusSnapshot:
    """Aggregate view of the queue, recomputed on demand."""

    pending_count: int = 0
    error_count: int = 0
    synced_count: int = 0
    last_sync_at: Optional[datetime] = None
    is_online: bool = False
    sync_success_rate: float = 0.0
    average_sync_time_ms: float = 0.0
    server: Optional[dict] = None

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0

    def to_dict(self) -> dict:
        return {
            "pendingCount": self.pending_count,
            "errorCount": self.error_count,
            "syncedCount": self.synced_count,
            "lastSyncAt": format_timestamp(self.last_sync_at) if self.last_sync_at else None,
            "hasErrors": self.has_errors,
            "isOnline": self.is_online,
            "syncSuccessRate": self.sync_success_rate,
            "averageSyncTimeMs": self.average_sync_time_ms,
            "server": self.server,
        }
