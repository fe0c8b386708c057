import os
import sys
import unittest
from pathlib import Path
from unittest.mock import Mock, patch


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from nextcloud_sync.api import create_app
from nextcloud_sync.jobs.base import ProgressiveJob
from nextcloud_sync.nextcloud_client import NextcloudApiError


HEADERS = {"X-Worker-Internal-Token": "worker-secret-token"}


class ListJob(ProgressiveJob):
    def __init__(self, items, error=None):
        self.items = None if items is None else list(items)
        self.error = error

    def estimate(self):
        return None if self.items is None else len(self.items)

    def run(self):
        while self.items:
            if self.error is not None:
                raise self.error
            self.items.pop(0)
            yield 1


@patch.dict(os.environ, {"WORKER_INTERNAL_API_TOKEN": "worker-secret-token"})
class SyncApiTests(unittest.TestCase):
    def setUp(self):
        self.services = Mock()
        self.client = create_app(self.services).test_client()

    @patch("nextcloud_sync.api.db.fetch_one", return_value={"ok": 1})
    def test_health_reports_database_and_scheduler(self, _fetch_one):
        response = self.client.get("/health", headers=HEADERS)

        body = response.get_json()
        self.assertEqual(response.status_code, 200)
        self.assertTrue(body["ok"])
        self.assertIn("enabled", body["scheduler"])

    @patch("nextcloud_sync.api.db.fetch_one", side_effect=RuntimeError("DATABASE_URL is not set"))
    def test_health_survives_database_failure(self, _fetch_one):
        response = self.client.get("/health", headers=HEADERS)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["db"], False)

    def test_status_reports_unavailable_nextcloud(self):
        self.services.build_job.return_value = ListJob(None)

        response = self.client.get("/sync/status", headers=HEADERS)

        self.assertEqual(response.get_json(), {"available": False, "estimate": None})

    def test_batch_runs_pending_work(self):
        self.services.build_job.return_value = ListJob(["a", "b"])

        response = self.client.post("/sync/batch", json={}, headers=HEADERS)

        body = response.get_json()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(body["finished"], 1)
        self.assertEqual(body["message"], "2 / 2")
        self.assertEqual(body["context"]["sandbox"], {"total": 2, "processed": 2})

    def test_batch_rejects_invalid_context(self):
        response = self.client.post("/sync/batch", json={"context": "step-2"}, headers=HEADERS)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "invalid_batch_context")

    def test_batch_reports_nextcloud_errors(self):
        self.services.build_job.return_value = ListJob(["a"], error=NextcloudApiError("Nextcloud is down"))

        response = self.client.post("/sync/batch", json={}, headers=HEADERS)

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.get_json()["error"], "nextcloud_api_error")

    @patch("nextcloud_sync.api.Thread")
    def test_run_now_queues_background_sync(self, mock_thread):
        response = self.client.post("/sync/run-now", headers=HEADERS)

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.get_json(), {"status": "queued"})
        self.assertEqual(mock_thread.call_args.kwargs["kwargs"], {"trigger": "run_now", "services": self.services})
        mock_thread.return_value.start.assert_called_once_with()

    def test_entity_change_is_dispatched(self):
        self.services.dispatcher.on_entity_changed.return_value = 4
        group = {"gid": 5, "label": "Physics", "roles": []}

        response = self.client.post("/entities/group/update", json=group, headers=HEADERS)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.get_json(),
            {"status": "queued", "kind": "group", "change": "update", "callbacks": 4},
        )
        self.services.dispatcher.on_entity_changed.assert_called_once_with("group", group, "update")

    def test_entity_change_validation(self):
        cases = [
            ("/entities/group/presave", {"gid": 5}, "invalid_change"),
            ("/entities/group/update", [{"gid": 5}], "entity_object_required"),
        ]
        for path, payload, error in cases:
            with self.subTest(path=path):
                response = self.client.post(path, json=payload, headers=HEADERS)
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.get_json()["error"], error)

    def test_entity_with_missing_key_is_a_bad_request(self):
        self.services.dispatcher.on_entity_changed.side_effect = KeyError("gid")

        response = self.client.post("/entities/group/delete", json={"label": "Physics"}, headers=HEADERS)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "invalid_entity")

    @patch("nextcloud_sync.api.emit")
    def test_failed_batch_is_logged_with_message_and_progress(self, mock_emit):
        self.services.build_job.return_value = ListJob(["a"], error=NextcloudApiError("Nextcloud is down"))

        self.client.post("/sync/batch", json={}, headers=HEADERS)

        level, actor, text = mock_emit.call_args.args
        self.assertEqual((level, actor), ("ERROR", "FLASK_API"))
        self.assertEqual(
            text,
            "Response sent: 502 Bad Gateway for POST /sync/batch; "
            "error=nextcloud_api_error message=Nextcloud is down processed=0 total=1",
        )

    @patch("nextcloud_sync.api.emit")
    def test_rejected_requests_are_logged_as_warnings(self, mock_emit):
        self.services.dispatcher.on_entity_changed.side_effect = KeyError("gid")

        self.client.post("/entities/group/delete", json={"label": "Physics"}, headers=HEADERS)
        self.client.get("/sync/status")

        summaries = [c.args for c in mock_emit.call_args_list if c.args[2].startswith("Response sent")]
        self.assertEqual(
            summaries,
            [
                (
                    "WARN",
                    "FLASK_API",
                    "Response sent: 400 Bad Request for POST /entities/group/delete; "
                    "error=invalid_entity message='gid'",
                ),
                (
                    "WARN",
                    "FLASK_API",
                    "Response sent: 401 Unauthorized for GET /sync/status; error=missing_internal_token",
                ),
            ],
        )


if __name__ == "__main__":
    unittest.main()
