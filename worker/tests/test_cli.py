import io
import sys
import unittest
from pathlib import Path
from unittest.mock import Mock, patch


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from nextcloud_sync import cli
from nextcloud_sync.jobs.base import CombinedJob


@patch("nextcloud_sync.cli.emit")
class CliTests(unittest.TestCase):
    def setUp(self):
        self.services = Mock()
        self.out = io.StringIO()

    def test_run_job_reports_progress(self, _mock_emit):
        job = Mock()
        job.estimate.side_effect = [2, 0]
        job.run.return_value = iter([1, 1])
        self.services.build_job.return_value = job

        code = cli.main(["run-job"], services=self.services, out=self.out)

        self.assertEqual(code, 0)
        self.assertEqual(self.out.getvalue(), "Pending: 2.\nRemaining: 0.\n")

    def test_run_job_without_nextcloud(self, _mock_emit):
        self.services.build_job.return_value = CombinedJob([])

        code = cli.main(["run-job"], services=self.services, out=self.out)

        self.assertEqual(code, 0)
        self.assertIn("Nextcloud is not available", self.out.getvalue())

    def test_install_schema(self, _mock_emit):
        self.services.install_schema.return_value = 12

        code = cli.main(["install-schema"], services=self.services, out=self.out)

        self.assertEqual(code, 0)
        self.assertEqual(self.out.getvalue(), "Schema statements executed: 12.\n")

    def test_uninstall_check_blocked(self, mock_emit):
        self.services.uninstall_blockers.return_value = ["There are still 2 remote objects in nc_sync_x."]

        code = cli.main(["uninstall-check", "nextcloud_sync_group_folder"], services=self.services, out=self.out)

        self.assertEqual(code, 1)
        self.assertIn("2 remote objects", self.out.getvalue())
        self.services.uninstall_blockers.assert_called_once_with("nextcloud_sync_group_folder")
        self.assertIn(("WARN", "CLI"), [c.args[:2] for c in mock_emit.call_args_list])

    def test_uninstall_check_clear(self, _mock_emit):
        self.services.uninstall_blockers.return_value = []

        code = cli.main(["uninstall-check", "nextcloud_sync"], services=self.services, out=self.out)

        self.assertEqual(code, 0)
        self.assertIn("nextcloud_sync can be uninstalled", self.out.getvalue())

    def test_unknown_command_exits(self, _mock_emit):
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                cli.main(["refresh"], services=self.services, out=self.out)


if __name__ == "__main__":
    unittest.main()
