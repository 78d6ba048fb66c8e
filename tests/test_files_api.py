import unittest
from datetime import timedelta
from uuid import uuid4
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from tests.base import *  # noqa: F401,F403

from filevault.core.security import create_jwt, issue_requester_token
from filevault.db.session import get_db
from filevault.main import app


class FilesApiTests(FileVaultTestCase):
    def setUp(self):
        super().setUp()

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()

    def _headers(self, sub=None, org=None, perms=None) -> dict[str, str]:
        token = issue_requester_token(
            sub or self.user_id,
            org or self.org_id,
            perms or [],
            settings.JWT_SECRET,
            timedelta(minutes=30),
        )
        return {"Authorization": f"Bearer {token}"}

    def _manager_headers(self) -> dict[str, str]:
        return self._headers(perms=["files:manage"])

    def test_presign_creates_intent(self):
        response = self.client.post(
            "/api/files/presign",
            headers=self._headers(),
            json={"filename": "Quarterly Report.pdf", "mime_type": "application/pdf", "size_bytes": 2048, "tags": ["Finance"]},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["storage_path"].startswith(f"organizations/{self.org_id}/"))
        self.assertTrue(body["upload_url"].startswith("https://s3.local/"))
        self.assertIsNone(body["download_url"])

        with self.SessionLocal() as db:
            record = db.get(FileRecord, UUID(body["file_id"]))
            self.assertEqual(record.processing_status, "pending")
            self.assertEqual(record.tags, ["finance"])

    def test_presign_requires_token(self):
        response = self.client.post(
            "/api/files/presign",
            json={"filename": "a.pdf", "mime_type": "application/pdf", "size_bytes": 1},
        )
        self.assertEqual(response.status_code, 401)

        response = self.client.post(
            "/api/files/presign",
            headers={"Authorization": "Bearer not-a-jwt"},
            json={"filename": "a.pdf", "mime_type": "application/pdf", "size_bytes": 1},
        )
        self.assertEqual(response.status_code, 401)

    def test_presign_validation_errors_carry_codes(self):
        response = self.client.post(
            "/api/files/presign",
            headers=self._headers(),
            json={"filename": "setup.exe", "mime_type": "application/octet-stream", "size_bytes": 10},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "disallowed_file_type")

        response = self.client.post(
            "/api/files/presign",
            headers=self._headers(),
            json={"filename": "huge.pdf", "mime_type": "application/pdf", "size_bytes": 101 * MB},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "file_too_large")

    def test_presign_rejects_overlong_filename(self):
        response = self.client.post(
            "/api/files/presign",
            headers=self._headers(),
            json={"filename": "a" * 1100 + ".pdf", "mime_type": "application/pdf", "size_bytes": 10},
        )
        self.assertEqual(response.status_code, 422)
        with self.SessionLocal() as db:
            self.assertEqual(db.query(FileRecord).count(), 0)

    def test_presign_quota_exceeded(self):
        with self.SessionLocal() as db:
            self.make_record(db, size_bytes=60 * MB)
        with patch("filevault.services.upload_coordinator.settings.ORGANIZATION_QUOTA_MB", 100):
            response = self.client.post(
                "/api/files/presign",
                headers=self._headers(),
                json={"filename": "big.pdf", "mime_type": "application/pdf", "size_bytes": 50 * MB},
            )
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertEqual(body["code"], "quota_exceeded")
        self.assertEqual(body["details"]["used_bytes"], 60 * MB)

    def test_get_file_enforces_access_and_counts_views(self):
        with self.SessionLocal() as db:
            record = self.make_record(db)
            file_id = str(record.id)

        response = self.client.get(f"/api/files/{file_id}", headers=self._headers())
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["id"], file_id)
        self.assertEqual(body["view_count"], 1)
        self.assertEqual(body["variants"], [])

        response = self.client.get(f"/api/files/{file_id}", headers=self._headers(sub=uuid4(), org=uuid4()))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "forbidden")

        response = self.client.get(f"/api/files/{uuid4()}", headers=self._headers())
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_organization_file_visible_to_org_members(self):
        with self.SessionLocal() as db:
            record = self.make_record(db, access_level="organization")
            file_id = str(record.id)
        response = self.client.get(f"/api/files/{file_id}", headers=self._headers(sub=uuid4()))
        self.assertEqual(response.status_code, 200)

    def test_download_returns_presigned_url_and_blocks_infected(self):
        with self.SessionLocal() as db:
            clean = self.make_record(db, virus_scan_status="clean")
            infected = self.make_record(db, virus_scan_status="infected", access_level="public")
            clean_id, infected_id = str(clean.id), str(infected.id)

        response = self.client.post(f"/api/files/{clean_id}/download", headers=self._headers())
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["download_url"].startswith("https://s3.local/"))
        self.assertIn("filename=report.pdf", body["download_url"])
        self.assertEqual(body["expires_in"], settings.DOWNLOAD_URL_TTL_SECONDS)

        response = self.client.post(f"/api/files/{infected_id}/download", headers=self._headers())
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["details"]["reason"], "virus_infected")

        with self.SessionLocal() as db:
            self.assertEqual(db.get(FileRecord, UUID(clean_id)).download_count, 1)
            self.assertEqual(db.get(FileRecord, UUID(infected_id)).download_count, 0)

    def test_public_download_uses_public_url(self):
        with self.SessionLocal() as db:
            record = self.make_record(db, access_level="public", public_url="https://test.s3/x", virus_scan_status="clean")
            file_id = str(record.id)
        response = self.client.post(f"/api/files/{file_id}/download", headers=self._headers(sub=uuid4(), org=uuid4()))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["download_url"], "https://test.s3/x")

    def test_process_endpoint_runs_pipeline(self):
        with self.SessionLocal() as db:
            record = self.make_record(db)
            self.storage.add_object(record.storage_path, b"%PDF-1.7 body", "application/pdf")
            file_id = str(record.id)

        response = self.client.post(f"/api/files/{file_id}/process", headers=self._headers())
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["processing_status"], "completed")
        self.assertEqual(body["virus_scan_status"], "clean")

        response = self.client.post(f"/api/files/{file_id}/process", headers=self._headers(), json={"force": True})
        self.assertEqual(response.status_code, 403)

        response = self.client.post(
            f"/api/files/{file_id}/process", headers=self._manager_headers(), json={"force": True}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(self.scanner.calls), 2)

    def test_process_endpoint_reports_in_progress(self):
        with self.SessionLocal() as db:
            record = self.make_record(db, processing_status="processing")
            file_id = str(record.id)
        response = self.client.post(f"/api/files/{file_id}/process", headers=self._headers())
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "processing_in_progress")

    def test_process_endpoint_does_not_count_views(self):
        with self.SessionLocal() as db:
            record = self.make_record(db)
            self.storage.add_object(record.storage_path, b"%PDF-1.7 body", "application/pdf")
            file_id = str(record.id)

        response = self.client.post(f"/api/files/{file_id}/process", headers=self._headers(sub=uuid4()))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "forbidden")

        for _ in range(2):
            response = self.client.post(f"/api/files/{file_id}/process", headers=self._headers())
            self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["view_count"], 0)
        with self.SessionLocal() as db:
            self.assertEqual(db.get(FileRecord, UUID(file_id)).view_count, 0)

    def test_list_files_filters_and_paginates(self):
        with self.SessionLocal() as db:
            self.make_record(db, filename="a.pdf", original_filename="a.pdf", tags=["finance", "q3"])
            self.make_record(db, filename="b.pdf", original_filename="b.pdf", tags=["finance"])
            self.make_record(db, filename="c.png", original_filename="c.png", mime_type="image/png")
            self.make_record(db, owner_id=uuid4(), organization_id=uuid4())
            self.make_record(db, is_archived=True)

        response = self.client.get("/api/files", headers=self._headers())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total"], 3)

        response = self.client.get("/api/files?tags=finance&tags=Q3", headers=self._headers())
        self.assertEqual([row["filename"] for row in response.json()["rows"]], ["a.pdf"])

        response = self.client.get("/api/files?mime_type=image", headers=self._headers())
        self.assertEqual(response.json()["total"], 1)

        response = self.client.get(
            "/api/files?sort_by=filename&sort_order=asc&page=2&page_size=2", headers=self._headers()
        )
        body = response.json()
        self.assertEqual(body["page"], 2)
        self.assertEqual([row["filename"] for row in body["rows"]], ["c.png"])

        response = self.client.get("/api/files", headers=self._manager_headers())
        self.assertEqual(response.json()["total"], 4)

        response = self.client.get("/api/files?owner_id=bad", headers=self._headers())
        self.assertEqual(response.status_code, 400)

    def test_patch_updates_metadata_and_visibility(self):
        with self.SessionLocal() as db:
            record = self.make_record(db)
            file_id = str(record.id)

        response = self.client.patch(
            f"/api/files/{file_id}",
            headers=self._headers(),
            json={"description": "Signed copy", "tags": ["Legal"], "access_level": "public"},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["description"], "Signed copy")
        self.assertEqual(body["tags"], ["legal"])
        self.assertEqual(body["access_level"], "public")
        self.assertTrue(body["public_url"].endswith(body["storage_path"]))

        response = self.client.patch(
            f"/api/files/{file_id}", headers=self._headers(sub=uuid4()), json={"description": "x"}
        )
        self.assertEqual(response.status_code, 403)

    def test_delete_removes_record_object_and_variants(self):
        with self.SessionLocal() as db:
            record = self.make_record(db, size_bytes=500)
            self.storage.add_object(record.storage_path, b"x" * 500)
            db.add(
                FileVariant(
                    file_id=record.id,
                    name="thumbnail",
                    storage_path=record.storage_path + "__thumbnail.jpg",
                    mime_type="image/jpeg",
                    size_bytes=20,
                )
            )
            db.commit()
            file_id, storage_path = str(record.id), record.storage_path

        response = self.client.delete(f"/api/files/{file_id}", headers=self._headers(sub=uuid4()))
        self.assertEqual(response.status_code, 403)

        response = self.client.delete(f"/api/files/{file_id}", headers=self._headers())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "deleted", "id": file_id, "bytes_reclaimed": 520})
        self.assertNotIn(storage_path, self.storage.objects)
        self.assertIn(storage_path + "__thumbnail.jpg", self.storage.deleted)
        self.assertEqual(self.events.names(), ["file.deleted"])

        response = self.client.get(f"/api/files/{file_id}", headers=self._headers())
        self.assertEqual(response.status_code, 404)

    def test_copy_creates_private_duplicate(self):
        with self.SessionLocal() as db:
            record = self.make_record(db, access_level="organization", virus_scan_status="clean", checksum="ab" * 32)
            self.storage.add_object(record.storage_path, b"%PDF-1.7 body", "application/pdf")
            file_id = str(record.id)

        member = uuid4()
        response = self.client.post(
            f"/api/files/{file_id}/copy", headers=self._headers(sub=member), json={"filename": "copy.pdf"}
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertNotEqual(body["id"], file_id)
        self.assertEqual(body["owner_id"], str(member))
        self.assertEqual(body["access_level"], "private")
        self.assertEqual(body["filename"], "copy.pdf")
        self.assertEqual(body["checksum"], "ab" * 32)
        self.assertIn(body["storage_path"], self.storage.objects)

    def test_copy_rejects_source_still_in_pipeline(self):
        with self.SessionLocal() as db:
            busy = self.make_record(db, processing_status="processing", virus_scan_status="scanning")
            self.storage.add_object(busy.storage_path, b"%PDF-1.7 body", "application/pdf")
            busy_id = str(busy.id)

        response = self.client.post(f"/api/files/{busy_id}/copy", headers=self._headers(), json={})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "processing_in_progress")
        self.assertNotIn("copy", [call[0] for call in self.storage.calls])
        with self.SessionLocal() as db:
            self.assertEqual(db.query(FileRecord).count(), 1)

    def test_copy_of_failed_source_can_be_reprocessed(self):
        with self.SessionLocal() as db:
            failed = self.make_record(db, processing_status="failed", processing_error="scan timed out")
            self.storage.add_object(failed.storage_path, b"%PDF-1.7 body", "application/pdf")
            failed_id = str(failed.id)

        response = self.client.post(f"/api/files/{failed_id}/copy", headers=self._headers(), json={})
        self.assertEqual(response.status_code, 200)
        copy_id = response.json()["id"]
        self.assertEqual(response.json()["processing_status"], "failed")

        response = self.client.post(f"/api/files/{copy_id}/process", headers=self._headers())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["processing_status"], "completed")

    def test_storage_webhook_queues_pending_uploads(self):
        with self.SessionLocal() as db:
            pending = self.make_record(db, storage_path=f"organizations/{self.org_id}/2026-10-19/{'a' * 32}_my_file.pdf")
            done = self.make_record(db, processing_status="completed")
            pending_id, done_path = pending.id, done.storage_path

        payload = {
            "Records": [
                {
                    "eventName": "s3:ObjectCreated:Put",
                    "s3": {"object": {"key": f"organizations/{self.org_id}/2026-10-19/{'a' * 32}_my_file.pdf"}},
                },
                {"eventName": "s3:ObjectCreated:Put", "s3": {"object": {"key": done_path}}},
                {"eventName": "s3:ObjectRemoved:Delete", "s3": {"object": {"key": "files/x.bin"}}},
            ]
        }
        response = self.client.post("/api/files/webhooks/storage", json=payload)
        self.assertEqual(response.status_code, 401)

        with patch("filevault.api.files.enqueue_processing") as enqueue:
            response = self.client.post(
                "/api/files/webhooks/storage",
                headers={"X-Webhook-Token": settings.STORAGE_WEBHOOK_TOKEN},
                json=payload,
            )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["queued"], [str(pending_id)])
        self.assertEqual(len(body["ignored"]), 2)
        enqueue.assert_called_once_with(pending_id)

    def test_organization_statistics(self):
        with self.SessionLocal() as db:
            self.make_record(db, size_bytes=100)
            self.make_record(db, size_bytes=50, mime_type="image/png", virus_scan_status="clean")
        response = self.client.get("/api/files/statistics/organization", headers=self._headers())
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["total_files"], 2)
        self.assertEqual(body["total_bytes"], 150)
        self.assertEqual(body["by_type"], {"application": 1, "image": 1})
        self.assertEqual(body["by_scan_status"]["clean"], 1)
        self.assertEqual(body["quota"]["used_bytes"], 150)

    def test_admin_cleanup_requires_manage_permission(self):
        response = self.client.post("/api/admin/cleanup/run", headers=self._headers())
        self.assertEqual(response.status_code, 403)

        with self.SessionLocal() as db:
            self.make_record(db, virus_scan_status="infected")
        response = self.client.post("/api/admin/cleanup/run", headers=self._manager_headers())
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["phase_counts"]["infected"], 1)
        self.assertEqual(body["total_deleted"], 1)

        response = self.client.get("/api/admin/cleanup/statistics", headers=self._manager_headers())
        self.assertEqual(response.status_code, 200)
        self.assertIn("archive_candidates", response.json())

        response = self.client.post(
            "/api/admin/cleanup/archive", headers=self._manager_headers(), json={"threshold_days": 30}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"archived": 0})

    def test_component_health_report(self):
        response = self.client.get("/api/admin/system/health", headers=self._headers())
        self.assertEqual(response.status_code, 403)

        engine = MagicMock()
        engine.version.return_value = "ClamAV 1.3.1/27400"
        with patch("filevault.services.malware_scan.get_scan_engine", return_value=engine):
            response = self.client.get("/api/admin/system/health", headers=self._manager_headers())
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["components"]["malware_scan"]["version"], "ClamAV 1.3.1/27400")
        self.assertTrue(body["components"]["image_transcoder"]["checks"]["test_decode"])
        self.assertEqual(body["components"]["retention"]["retention_days"]["failed_grace"], 7)

        engine.version.return_value = "unknown"
        with patch("filevault.services.malware_scan.get_scan_engine", return_value=engine):
            response = self.client.get("/api/admin/system/health", headers=self._manager_headers())
        self.assertEqual(response.json()["status"], "degraded")
        self.assertEqual(response.json()["components"]["malware_scan"]["status"], "degraded")

    def test_permissions_claim_accepts_comma_separated_string(self):
        token = create_jwt(
            {"sub": str(self.user_id), "perms": "files:read, files:manage"},
            settings.JWT_SECRET,
            timedelta(minutes=5),
        )
        response = self.client.get("/api/admin/cleanup/statistics", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 200)

        expired = create_jwt({"sub": str(self.user_id)}, settings.JWT_SECRET, timedelta(minutes=-5))
        response = self.client.get("/api/files", headers={"Authorization": f"Bearer {expired}"})
        self.assertEqual(response.status_code, 401)

    def test_admin_cleanup_conflict_when_sweep_running(self):
        self.assertTrue(self.sweep_lock.acquire())
        self.addCleanup(self.sweep_lock.release)
        response = self.client.post("/api/admin/cleanup/run", headers=self._manager_headers())
        self.assertEqual(response.status_code, 409)

    def test_request_id_and_security_headers(self):
        response = self.client.get("/health", headers={"X-Request-ID": "req-123"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["X-Request-ID"], "req-123")
        self.assertEqual(response.headers["X-Content-Type-Options"], "nosniff")
        self.assertEqual(response.headers["Cache-Control"], "no-store")

        response = self.client.get("/health", headers={"X-Request-ID": "bad id with spaces"})
        self.assertRegex(response.headers["X-Request-ID"], r"^[0-9a-f]{32}$")


if __name__ == "__main__":
    unittest.main()
