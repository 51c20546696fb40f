"""Tests for the reference sync endpoint, alone and behind the real client."""

import gzip
import json
import tempfile
from pathlib import Path
from unittest.mock import Mock
from urllib.parse import parse_qs, urlparse

import responses

from grifo_sync.config import SyncSettings
from grifo_sync.sync.endpoint import (
    PHOTO_URL_TEMPLATE,
    STAGED_PHOTO_URL_TEMPLATE,
    StoreUnavailableError,
    SyncEndpoint,
)
from grifo_sync.sync.grifo_client import GrifoClient
from grifo_sync.sync.models import Inspection, InspectionStatus
from grifo_sync.sync.queue import InspectionQueue
from grifo_sync.sync.sync_engine import SyncOrchestrator

API_URL = "https://api.grifo.test/api"
REMOTE_PHOTO = "https://storage.googleapis.com/grifo-vistorias/empresa-1/legacy/photo_0.jpg"


def make_payload(**overrides) -> dict:
    payload = Inspection.new(
        empresa_id="empresa-1",
        vistoriador_id="vist-1",
        imovel_id="imovel-1",
        tipo="manutencao",
        fotos=[REMOTE_PHOTO],
        checklist={"eletrica": "ok"},
    ).to_payload()
    payload.update(overrides)
    return payload


def sync_body(*payloads, empresa_id="empresa-1") -> dict:
    return {
        "pendingInspections": list(payloads),
        "vistoriadorId": "vist-1",
        "empresaId": empresa_id,
    }


class TestSyncEndpoint:
    """Tests for SyncEndpoint handlers."""

    def setup_method(self):
        self.sleeps = []
        self.endpoint = SyncEndpoint(sleep=self.sleeps.append)

    def test_health(self):
        assert self.endpoint.handle_health() == (200, {"status": "ok"})

    def test_sync_commits_inspection(self):
        payload = make_payload()

        status, response = self.endpoint.handle_sync(sync_body(payload))

        assert status == 200
        assert response["success"] is True
        result = response["data"]["syncResults"][0]
        assert result["localId"] == payload["id"]
        assert result["status"] == "success"
        assert result["cloudId"].startswith("cloud_")
        assert result["syncedAt"].endswith("Z")
        assert response["data"]["errors"] == []
        assert self.endpoint.get_document(payload["id"]).data["imovelId"] == "imovel-1"

    def test_resubmission_is_idempotent(self):
        """Test that the same id twice yields one document and the first cloud id."""
        payload = make_payload()

        _, first = self.endpoint.handle_sync(sync_body(payload))
        _, second = self.endpoint.handle_sync(sync_body(payload))

        first_result = first["data"]["syncResults"][0]
        second_result = second["data"]["syncResults"][0]
        assert second_result["cloudId"] == first_result["cloudId"]
        assert second_result["syncedAt"] == first_result["syncedAt"]
        assert second_result["status"] == "already_synced"
        assert len(self.endpoint.documents()) == 1

    def test_invalid_body_is_rejected(self):
        status, response = self.endpoint.handle_sync({"pendingInspections": []})

        assert status == 400
        assert response["success"] is False
        assert any(e["path"] == "vistoriadorId" for e in response["errors"])

    def test_store_failures_are_retried(self):
        self.endpoint.before_commit = Mock(
            side_effect=[StoreUnavailableError("busy"), StoreUnavailableError("busy"), None]
        )

        status, response = self.endpoint.handle_sync(sync_body(make_payload()))

        assert status == 200
        assert len(response["data"]["syncResults"]) == 1
        assert self.sleeps == [0.1, 0.2]

    def test_store_failure_after_retries_is_item_error(self):
        """Test that an exhausted retry budget reports the item and writes nothing."""
        self.endpoint.before_commit = Mock(side_effect=StoreUnavailableError("store offline"))
        payload = make_payload()

        _, response = self.endpoint.handle_sync(sync_body(payload))

        assert response["data"]["syncResults"] == []
        assert response["data"]["errors"] == [
            {"inspectionId": payload["id"], "error": "store offline"}
        ]
        assert self.endpoint.before_commit.call_count == 4
        assert self.sleeps == [0.1, 0.2, 0.4]
        assert self.endpoint.documents() == []

    def test_mixed_batch(self):
        """Test partial failure isolation across server batches."""
        payloads = [make_payload() for _ in range(7)]
        bad_id = payloads[5]["id"]

        def fail_one(inspection_id):
            if inspection_id == bad_id:
                raise ValueError("constraint violated")

        self.endpoint.before_commit = fail_one

        _, response = self.endpoint.handle_sync(sync_body(*payloads))

        assert len(response["data"]["syncResults"]) == 6
        assert [e["inspectionId"] for e in response["data"]["errors"]] == [bad_id]

    def test_staged_photo_promoted_with_document(self):
        payload = make_payload()
        _, upload = self.endpoint.handle_photo_upload(payload["id"], "empresa-1", 0, b"jpeg")
        staged_url = upload["data"]["url"]
        payload["fotos"] = [staged_url]

        _, response = self.endpoint.handle_sync(sync_body(payload))

        permanent = PHOTO_URL_TEMPLATE.format(
            empresa_id="empresa-1", inspection_id=payload["id"], index=0
        )
        assert response["data"]["syncResults"][0]["photoUrls"] == [permanent]
        assert self.endpoint.has_photo(permanent)
        assert self.endpoint.staged_count() == 0

    def test_failed_commit_keeps_photos_staged(self):
        """Test that a failed item leaves neither a document nor promoted photos."""
        payload = make_payload()
        _, upload = self.endpoint.handle_photo_upload(payload["id"], "empresa-1", 0, b"jpeg")
        payload["fotos"] = [upload["data"]["url"]]
        self.endpoint.before_commit = Mock(side_effect=StoreUnavailableError("down"))

        self.endpoint.handle_sync(sync_body(payload))

        permanent = PHOTO_URL_TEMPLATE.format(
            empresa_id="empresa-1", inspection_id=payload["id"], index=0
        )
        assert self.endpoint.get_document(payload["id"]) is None
        assert not self.endpoint.has_photo(permanent)
        assert self.endpoint.staged_count() == 1

    def test_reupload_overwrites_staged_photo(self):
        self.endpoint.handle_photo_upload("insp-1", "empresa-1", 0, b"first")
        self.endpoint.handle_photo_upload("insp-1", "empresa-1", 0, b"second")

        assert self.endpoint.staged_count() == 1

    def test_missing_staged_photo_rejected(self):
        payload = make_payload()
        payload["fotos"] = [
            STAGED_PHOTO_URL_TEMPLATE.format(
                empresa_id="empresa-1", inspection_id=payload["id"], index=0
            )
        ]

        _, response = self.endpoint.handle_sync(sync_body(payload))

        assert "not found" in response["data"]["errors"][0]["error"]
        assert self.endpoint.documents() == []

    def test_local_photo_uri_rejected(self):
        payload = make_payload(fotos=["file:///data/photo_0.jpg"])

        _, response = self.endpoint.handle_sync(sync_body(payload))

        assert "not uploaded" in response["data"]["errors"][0]["error"]

    def test_other_company_inspection_rejected(self):
        payload = make_payload(empresaId="empresa-2")

        _, response = self.endpoint.handle_sync(sync_body(payload))

        assert "another company" in response["data"]["errors"][0]["error"]
        assert self.endpoint.documents() == []

    def test_photo_upload_validation(self):
        assert self.endpoint.handle_photo_upload("insp-1", "empresa-1", 0, b"")[0] == 400
        assert self.endpoint.handle_photo_upload("", "empresa-1", 0, b"x")[0] == 400

    def test_status_metrics(self):
        failing_id = None

        def fail(inspection_id):
            if inspection_id == failing_id:
                raise StoreUnavailableError("down")

        self.endpoint = SyncEndpoint(before_commit=fail, sleep=lambda s: None)
        payloads = [make_payload() for _ in range(4)]
        failing_id = payloads[3]["id"]
        self.endpoint.handle_sync(
            {**sync_body(*payloads), "deviceInfo": {"appVersion": "1.2.3"}}
        )

        status, response = self.endpoint.handle_status("empresa-1")

        data = response["data"]
        assert status == 200
        assert data["syncedCount"] == 3
        assert data["errorCount"] == 1
        assert data["syncSuccessRate"] == 75.0
        assert data["deviceInfo"] == {"appVersion": "1.2.3"}
        assert data["lastSyncTimestamp"] is not None
        assert self.endpoint.handle_status("empresa-9")[1]["data"]["syncedCount"] == 0

    def test_status_pending_clears_after_resend(self):
        down = {"value": True}

        def flaky(inspection_id):
            if down["value"]:
                raise StoreUnavailableError("down")

        self.endpoint = SyncEndpoint(before_commit=flaky, sleep=lambda s: None)
        payload = make_payload()
        self.endpoint.handle_sync(sync_body(payload))
        self.endpoint.handle_sync(sync_body(payload))

        data = self.endpoint.handle_status("empresa-1")[1]["data"]
        assert data["pendingCount"] == 1
        assert data["errorCount"] == 2

        down["value"] = False
        self.endpoint.handle_sync(sync_body(payload))

        data = self.endpoint.handle_status("empresa-1")[1]["data"]
        assert data["pendingCount"] == 0
        assert data["errorCount"] == 2
        assert data["syncedCount"] == 1

    def test_status_requires_company(self):
        assert self.endpoint.handle_status("")[0] == 400


class TestEndToEnd:
    """Orchestrator -> GrifoClient -> HTTP -> SyncEndpoint."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.queue = InspectionQueue(db_path=Path(self.temp_dir) / "test_inspections.db")
        self.endpoint = SyncEndpoint(sleep=lambda s: None)
        self.client = GrifoClient(api_url=API_URL, token="test-token", empresa_id="empresa-1")
        self.orchestrator = SyncOrchestrator(
            self.queue, self.client, SyncSettings(), sleep=lambda s: None
        )
        self.drop_next_response = False

    def teardown_method(self):
        self.client.close()
        self.queue.close()

    def register_routes(self):
        def sync_callback(request):
            body = request.body
            if request.headers.get("Content-Encoding") == "gzip":
                body = gzip.decompress(body)
            status, response = self.endpoint.handle_sync(json.loads(body))
            if self.drop_next_response:
                # Committed on the server, but the reply never reaches the device
                self.drop_next_response = False
                return (503, {}, "")
            return (status, {}, json.dumps(response))

        def status_callback(request):
            query = parse_qs(urlparse(request.url).query)
            status, response = self.endpoint.handle_status(
                query["empresaId"][0], query.get("vistoriadorId", [None])[0]
            )
            return (status, {}, json.dumps(response))

        responses.add_callback(responses.POST, f"{API_URL}/sync", callback=sync_callback)
        responses.add_callback(
            responses.GET, f"{API_URL}/sync/status", callback=status_callback
        )
        responses.add(responses.GET, f"{API_URL}/health", json={"status": "ok"})

    def enqueue(self, count=1) -> list[Inspection]:
        inspections = [
            Inspection.new(
                empresa_id="empresa-1",
                vistoriador_id="vist-1",
                imovel_id=f"imovel-{i}",
                tipo="entrada",
                fotos=[REMOTE_PHOTO],
                checklist={"portas": "ok"},
            )
            for i in range(count)
        ]
        for inspection in inspections:
            self.queue.enqueue(inspection)
        return inspections

    @responses.activate
    def test_full_pass(self):
        self.register_routes()
        inspections = self.enqueue(3)

        result = self.orchestrator.auto_sync("vist-1", "empresa-1")

        assert result.synced == 3
        for inspection in inspections:
            stored = self.queue.get(inspection.id)
            document = self.endpoint.get_document(inspection.id)
            assert stored.status == InspectionStatus.SYNCED
            assert stored.cloud_id == document.cloud_id

    @responses.activate
    def test_lost_response_does_not_duplicate(self):
        """Test that a retry after a lost reply returns the first commit."""
        self.register_routes()
        inspection = self.enqueue()[0]
        self.drop_next_response = True

        result = self.orchestrator.auto_sync("vist-1", "empresa-1")

        assert result.synced == 1
        assert len(self.endpoint.documents()) == 1
        assert self.queue.get(inspection.id).cloud_id == (
            self.endpoint.get_document(inspection.id).cloud_id
        )

    @responses.activate
    def test_resync_after_edit_keeps_cloud_id(self):
        self.register_routes()
        inspection = self.enqueue()[0]
        self.orchestrator.auto_sync("vist-1", "empresa-1")
        first_cloud_id = self.queue.get(inspection.id).cloud_id

        edited = self.queue.get(inspection.id)
        edited.observacoes = "Revisada"
        self.queue.update(edited)
        self.orchestrator.auto_sync("vist-1", "empresa-1")

        assert self.queue.get(inspection.id).cloud_id == first_cloud_id
        assert len(self.endpoint.documents()) == 1

    @responses.activate
    def test_server_status(self):
        self.register_routes()
        self.enqueue(2)
        self.orchestrator.auto_sync("vist-1", "empresa-1")

        snapshot = self.orchestrator.get_sync_status(
            include_server=True, empresa_id="empresa-1", vistoriador_id="vist-1"
        )

        assert snapshot.synced_count == 2
        assert snapshot.is_online is True
        assert snapshot.server["syncedCount"] == 2
