"""Grifo API client - uploads inspections and photos to the backend."""

import base64
import logging
import mimetypes
import os
from dataclasses import dataclass, field
from typing import Optional

import requests

from ..config import DEFAULT_API_URL
from .http_client import (
    BaseApiClient,
    GrifoAuthError,
    GrifoClientError,
    GrifoPayloadError,
    GrifoTransientError,
)
from .models import Photo, parse_timestamp

__all__ = [
    "GrifoClient",
    "GrifoClientError",
    "GrifoAuthError",
    "GrifoPayloadError",
    "GrifoTransientError",
    "ItemSyncResult",
    "ItemSyncError",
    "BatchSyncResponse",
]

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT = 10  # seconds


@dataclass
class ItemSyncResult:
    """One inspection committed by the server."""

    local_id: str
    cloud_id: str
    status: str = "success"
    synced_at: Optional[str] = None
    photo_urls: Optional[list[str]] = None

    @property
    def synced_at_datetime(self):
        return parse_timestamp(self.synced_at)


@dataclass
class ItemSyncError:
    """One inspection the server failed to commit."""

    inspection_id: str
    error: str


@dataclass
class BatchSyncResponse:
    """Parsed response of ``POST /sync``."""

    results: list[ItemSyncResult] = field(default_factory=list)
    errors: list[ItemSyncError] = field(default_factory=list)
    duration_ms: int = 0

    def result_for(self, local_id: str) -> Optional[ItemSyncResult]:
        for result in self.results:
            if result.local_id == local_id:
                return result
        return None

    def error_for(self, local_id: str) -> Optional[ItemSyncError]:
        for error in self.errors:
            if error.inspection_id == local_id:
                return error
        return None

    @classmethod
    def from_response(cls, response: dict) -> "BatchSyncResponse":
        data = response.get("data") or {}
        return cls(
            results=[
                ItemSyncResult(
                    local_id=r["localId"],
                    cloud_id=r["cloudId"],
                    status=r.get("status", "success"),
                    synced_at=r.get("syncedAt"),
                    photo_urls=r.get("photoUrls"),
                )
                for r in data.get("syncResults", [])
            ],
            errors=[
                ItemSyncError(
                    inspection_id=e.get("inspectionId", ""),
                    error=e.get("error", "Sync failed"),
                )
                for e in data.get("errors", [])
            ],
            duration_ms=data.get("durationMs", 0),
        )


class GrifoClient(BaseApiClient):
    """Client for syncing inspections to the Grifo backend."""

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        token: Optional[str] = None,
        empresa_id: Optional[str] = None,
        compress: bool = True,
        timeout: int = 15,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(
            api_url=api_url,
            token=token,
            empresa_id=empresa_id,
            compress=compress,
            timeout=timeout,
            session=session,
        )

    def is_reachable(self) -> bool:
        """Check if the Grifo API is reachable and healthy."""
        try:
            response = self._request("GET", "health", timeout=HEALTH_TIMEOUT)
        except GrifoClientError as e:
            logger.debug(f"Server not reachable: {e}")
            return False
        return response.get("status", "ok") == "ok"

    def sync_inspections(
        self,
        inspections: list[dict],
        vistoriador_id: str,
        empresa_id: str,
    ) -> BatchSyncResponse:
        """Send inspections to the server.

        A 200 response may mix committed inspections and per-item errors;
        only transport failures and non-2xx statuses raise.

        Args:
            inspections: Inspection payloads (``Inspection.to_payload()``)
            vistoriador_id: Inspector submitting the batch
            empresa_id: Tenant of the inspections

        Returns:
            BatchSyncResponse with per-item results and errors
        """
        if not inspections:
            return BatchSyncResponse()

        response = self._request(
            "POST",
            "sync",
            data={
                "pendingInspections": inspections,
                "vistoriadorId": vistoriador_id,
                "empresaId": empresa_id,
            },
            compress=True,
        )
        if response.get("success") is False:
            raise GrifoTransientError(
                response.get("message") or "Server reported a failed sync"
            )
        return BatchSyncResponse.from_response(response)

    def upload_photo(
        self,
        inspection_id: str,
        empresa_id: str,
        index: int,
        photo: Photo,
    ) -> str:
        """Upload one local photo and return its staged remote URL.

        Uploading the same (inspection, index) pair again replaces the
        previous upload, so the call is safe to retry.

        Raises:
            GrifoPayloadError: If the local file is missing or unreadable
        """
        filename, content, content_type = self._read_photo(photo, index)
        response = self._request(
            "POST",
            "uploads/photo",
            data={
                "inspectionId": inspection_id,
                "empresaId": empresa_id,
                "index": str(index),
            },
            files={"file": (filename, content, content_type)},
        )
        url = (response.get("data") or {}).get("url") or response.get("url")
        if not url:
            raise GrifoTransientError("Photo upload response has no URL")
        return url

    @staticmethod
    def _read_photo(photo: Photo, index: int) -> tuple[str, bytes, str]:
        """Load a local photo as (filename, bytes, content type)."""
        if photo.uri.startswith("data:image"):
            header, _, encoded = photo.uri.partition(",")
            if not encoded:
                raise GrifoPayloadError(f"Invalid data URI for photo {index}")
            content_type = header[len("data:"):].split(";")[0] or "image/jpeg"
            extension = mimetypes.guess_extension(content_type) or ".jpg"
            try:
                content = base64.b64decode(encoded)
            except ValueError as e:
                raise GrifoPayloadError(f"Invalid data URI for photo {index}") from e
            return f"photo_{index}{extension}", content, content_type

        path = photo.local_path
        if not path or not os.path.exists(path):
            raise GrifoPayloadError(f"Photo file not found: {photo.uri}")
        try:
            with open(path, "rb") as f:
                content = f.read()
        except OSError as e:
            raise GrifoPayloadError(f"Cannot read photo file {photo.uri}: {e}") from e
        content_type = mimetypes.guess_type(path)[0] or "image/jpeg"
        return os.path.basename(path), content, content_type

    def get_sync_status(
        self, empresa_id: str, vistoriador_id: Optional[str] = None
    ) -> dict:
        """Get server-side sync metrics for the company (or one inspector)."""
        params = {"empresaId": empresa_id}
        if vistoriador_id:
            params["vistoriadorId"] = vistoriador_id
        response = self._request("GET", "sync/status", params=params)
        return response.get("data", response)

    def get_config(self) -> dict:
        """Get sync configuration from server."""
        return self._request("GET", "sync/config")