import io
import sys
import unittest
from itertools import islice
from pathlib import Path
from unittest.mock import Mock, call, patch


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from nextcloud_sync.jobs.base import CombinedJob, ProgressiveJob
from nextcloud_sync.jobs.collector import JobCollector, Phase, collect_tracking_table_jobs
from nextcloud_sync.jobs.runner import run_cron, run_to_completion
from nextcloud_sync.jobs.table_jobs import DependentPostDeleteJob, DependentPreDeleteJob, TrackingTableOpJob
from nextcloud_sync.tracking.op import Op, WRITE_OPS
from nextcloud_sync.tracking.submit import NcWorkspaceSubmit
from nextcloud_sync.tracking.table import Column, TrackingTable, TrackingTableRelationship
from nextcloud_sync.tracking.trackers import GroupNcGroupFolderTracker
from nextcloud_sync.wiring import SyncServices, build_trackers
from sync_fixtures import RecordingSubmit, SqliteConnection, ops_by_key


class StaticJob(ProgressiveJob):
    def __init__(self, name, size, log=None):
        self.name = name
        self._size = size
        self._log = log if log is not None else []

    def estimate(self):
        return self._size

    def run(self):
        self._log.append(self.name)
        for _ in range(self._size or 0):
            yield 1


class CombinedJobTests(unittest.TestCase):
    def test_estimate_is_none_when_every_job_is_skippable(self):
        self.assertIsNone(CombinedJob([]).estimate())
        self.assertIsNone(CombinedJob([StaticJob("a", None), StaticJob("b", None)]).estimate())

    def test_estimate_sums_available_jobs(self):
        job = CombinedJob([StaticJob("a", 2), StaticJob("b", None), StaticJob("c", 0)])

        self.assertEqual(job.estimate(), 2)

    def test_run_skips_jobs_without_estimate(self):
        log = []
        job = CombinedJob([StaticJob("a", 2, log), StaticJob("b", None, log), StaticJob("c", 1, log)])

        self.assertEqual(list(job.run()), [1, 1, 1])
        self.assertEqual(log, ["a", "c"])


class JobCollectorTests(unittest.TestCase):
    def test_jobs_are_ordered_by_phase_then_position_then_insertion(self):
        collector = JobCollector()
        collector.add_job(Phase.WRITE, 0, StaticJob("write-0", 0))
        collector.add_job(Phase.DELETE, 1000, StaticJob("post-delete", 0))
        collector.add_job(Phase.DELETE, -10, StaticJob("delete-dependent", 0))
        collector.add_job(Phase.WRITE, 10, StaticJob("write-10", 0))
        collector.add_job(Phase.DELETE, 0, StaticJob("delete-a", 0))
        collector.add_job(Phase.DELETE, 0, StaticJob("delete-b", 0))

        names = [job.name for job in collector.get_jobs()]

        self.assertEqual(
            names,
            ["delete-dependent", "delete-a", "delete-b", "post-delete", "write-0", "write-10"],
        )

    def test_dependent_table_gets_pre_and_post_delete_jobs(self):
        conn = SqliteConnection()
        grants = build_trackers(conn)[3]
        collector = JobCollector()

        collect_tracking_table_jobs(collector, grants.table, RecordingSubmit())

        self.assertEqual(
            [type(job) for job in collector.get_jobs()],
            [DependentPreDeleteJob, TrackingTableOpJob, DependentPostDeleteJob, TrackingTableOpJob],
        )

    def test_chain_is_written_top_down_and_deleted_bottom_up(self):
        conn = SqliteConnection()
        levels = []
        for depth in range(4):
            relationships = {}
            if levels:
                relationships["p"] = TrackingTableRelationship(levels[-1], {"gid": "gid"})
            levels.append(
                TrackingTable(
                    f"t_level{depth}",
                    local_key=[Column("gid", "BIGINT")],
                    relationships=relationships,
                    connect=conn,
                )
            )
        conn.create(*levels)
        self.assertEqual([table.get_depth() for table in levels], [0, 1, 2, 3])

        log = []
        collector = JobCollector()
        for depth in (2, 0, 3, 1):
            collect_tracking_table_jobs(collector, levels[depth], RecordingSubmit(f"level{depth}", log))
        for table in levels:
            table.queue_write({"gid": 1})

        self.assertEqual(sum(collector.build_job().run()), 4)
        self.assertEqual(log, [("level0", Op.INSERT), ("level1", Op.INSERT), ("level2", Op.INSERT), ("level3", Op.INSERT)])

        log.clear()
        for table in levels:
            table.queue_delete({"gid": 1})

        self.assertEqual(sum(collector.build_job().run()), 4)
        self.assertEqual(log, [("level3", Op.DELETE), ("level2", Op.DELETE), ("level1", Op.DELETE), ("level0", Op.DELETE)])
        for depth in range(4):
            self.assertEqual(conn.rows(f"t_level{depth}"), [])


class TrackingTableOpJobTests(unittest.TestCase):
    def setUp(self):
        self.conn = SqliteConnection()
        self.folders = GroupNcGroupFolderTracker(self.conn).table
        self.conn.create(self.folders)
        for gid in range(1, 6):
            self.folders.queue_write({"gid": gid, "nc_mount_point": f"Group {gid}"})

    def test_successful_run_stores_remote_values(self):
        submit = RecordingSubmit(results=[{"nc_group_folder_id": 100 + gid} for gid in range(1, 6)])
        job = TrackingTableOpJob(self.folders, submit, [Op.INSERT, Op.UPDATE])

        self.assertEqual(job.estimate(), 5)
        self.assertEqual(sum(job.run()), 5)

        self.assertEqual(job.estimate(), 0)
        rows = self.conn.rows("nc_sync_group_nc_group_folder", "gid")
        self.assertEqual([row["nc_group_folder_id"] for row in rows], [101, 102, 103, 104, 105])

    @patch("nextcloud_sync.jobs.runner.emit")
    def test_failure_keeps_progress_of_earlier_steps(self, mock_emit):
        submit = RecordingSubmit(fail_on_call=3, results=[{"nc_group_folder_id": 1}, {"nc_group_folder_id": 2}])
        job = TrackingTableOpJob(self.folders, submit, [Op.INSERT, Op.UPDATE])

        summary = run_cron(job)

        self.assertEqual(summary["status"], "failed")
        self.assertEqual(summary["progress"], 2)
        self.assertEqual(summary["estimate_before"], 5)
        ops = ops_by_key(self.conn.rows("nc_sync_group_nc_group_folder"), "gid")
        self.assertEqual(
            ops,
            {(1,): Op.UNCHANGED, (2,): Op.UNCHANGED, (3,): Op.INSERT, (4,): Op.INSERT, (5,): Op.INSERT},
        )
        self.assertIn("step=3", mock_emit.call_args.args[2])

    def test_delete_job_forgets_deleted_records(self):
        for gid in range(1, 6):
            self.folders.report_remote_values({"gid": gid}, {"nc_group_folder_id": gid})
        self.folders.queue_delete({"gid": 2})
        submit = RecordingSubmit()

        progress = list(TrackingTableOpJob(self.folders, submit, [Op.DELETE]).run())

        self.assertEqual(progress, [1])
        self.assertEqual(submit.calls[0][1], Op.DELETE)
        self.assertEqual(submit.calls[0][0]["nc_group_folder_id"], 2)
        self.assertEqual([row["gid"] for row in self.conn.rows("nc_sync_group_nc_group_folder", "gid")], [1, 3, 4, 5])

    def test_stopped_run_resumes_with_the_remaining_records(self):
        submit = RecordingSubmit(results=[{"nc_group_folder_id": 100 + gid} for gid in range(1, 6)])
        first = TrackingTableOpJob(self.folders, submit, WRITE_OPS)

        iterator = first.run()
        self.assertEqual(list(islice(iterator, 2)), [1, 1])
        iterator.close()
        self.assertEqual(first.estimate(), 3)

        second = TrackingTableOpJob(self.folders, submit, WRITE_OPS)
        self.assertEqual(sum(second.run()), 3)

        self.assertEqual([record["gid"] for record, _op in submit.calls], [1, 2, 3, 4, 5])
        self.assertEqual(second.estimate(), 0)
        rows = self.conn.rows("nc_sync_group_nc_group_folder", "gid")
        self.assertEqual([row["nc_group_folder_id"] for row in rows], [101, 102, 103, 104, 105])


class SyncPipelineTests(unittest.TestCase):
    """All trackers against one database, with recording submitters."""

    GROUP = {
        "gid": 5,
        "label": "Physics",
        "has_workspace": True,
        "roles": [
            {
                "id": "editor",
                "label": "Editor",
                "permissions": ["nextcloud group folder read", "nextcloud group folder write"],
            }
        ],
    }
    USER = {
        "uid": 1,
        "name": "alice",
        "email": "alice@example.org",
        "display_name": "Alice",
        "have_nextcloud_account": True,
    }

    def setUp(self):
        self.conn = SqliteConnection()
        self.trackers = build_trackers(self.conn)
        self.conn.create(*(tracker.table for tracker in self.trackers))
        self.log = []
        self.submits = {
            "user": RecordingSubmit("user", self.log),
            "group": RecordingSubmit("group", self.log),
            "folder": RecordingSubmit("folder", self.log, results=[{"nc_group_folder_id": 7}]),
            "grant": RecordingSubmit("grant", self.log),
            "member": RecordingSubmit("member", self.log),
            "workspace": RecordingSubmit("workspace", self.log, results=[{"nc_workspace_id": 3}]),
        }
        for tracker, submit in zip(self.trackers, self.submits.values()):
            tracker.create_submit = lambda _client, submit=submit: submit
        self.services = SyncServices(self.trackers, client_factory=lambda: object(), connect=self.conn)

    def _run(self):
        out = io.StringIO()
        remaining = run_to_completion(self.services.build_job(), out)
        return remaining, out.getvalue()

    def _queue_everything(self):
        self.services.dispatcher.on_entity_changed("user", self.USER, "insert")
        self.services.dispatcher.on_entity_changed("group", self.GROUP, "insert")
        self.services.dispatcher.on_entity_changed("group_membership", {"uid": 1, "gid": 5, "roles": ["editor"]}, "insert")

    def test_parents_are_created_before_dependents(self):
        self._queue_everything()

        remaining, output = self._run()

        self.assertEqual(remaining, 0)
        self.assertIn("Pending: 6.", output)
        self.assertIn("Remaining: 0.", output)
        self.assertEqual(
            self.log,
            [
                ("user", Op.INSERT),
                ("group", Op.INSERT),
                ("folder", Op.INSERT),
                ("grant", Op.INSERT),
                ("member", Op.INSERT),
                ("workspace", Op.INSERT),
            ],
        )
        grant_record = self.submits["grant"].calls[0][0]
        self.assertEqual(grant_record["nc_group_folder_id"], 7)
        self.assertEqual(grant_record["nc_group_id"], "DRUPAL-GROUP-5-editor")
        self.assertEqual(grant_record["nc_permissions"], 7)
        member_record = self.submits["member"].calls[0][0]
        self.assertEqual((member_record["nc_user_id"], member_record["nc_group_id"]), ("alice", "DRUPAL-GROUP-5-editor"))
        workspace_rows = self.conn.rows("nc_sync_group_nc_workspace")
        self.assertEqual(workspace_rows[0]["nc_workspace_id"], 3)

    def test_second_run_has_nothing_to_do(self):
        self._queue_everything()
        self._run()
        self.log.clear()

        remaining, output = self._run()

        self.assertEqual(remaining, 0)
        self.assertIn("Pending: 0.", output)
        self.assertEqual(self.log, [])

    def test_group_delete_removes_grants_before_the_group(self):
        self._queue_everything()
        self._run()
        self.log.clear()

        self.services.dispatcher.on_entity_changed("group", self.GROUP, "delete")
        remaining, _output = self._run()

        # The membership row is still pending, without a group to join.
        self.assertEqual(remaining, 1)
        self.assertEqual(
            self.log,
            [
                ("grant", Op.DELETE),
                ("workspace", Op.DELETE),
                ("group", Op.DELETE),
                ("folder", Op.DELETE),
            ],
        )
        # Membership rows survive and wait for the group to come back.
        members = self.conn.rows("nc_sync_group_membership_role_nc_user_group")
        self.assertEqual([row["pending_operation"] for row in members], [Op.INSERT])
        for table_name in (
            "nc_sync_group_role_nc_group",
            "nc_sync_group_nc_group_folder",
            "nc_sync_group_role_nc_group_folder_group",
            "nc_sync_group_nc_workspace",
        ):
            with self.subTest(table=table_name):
                self.assertEqual(self.conn.rows(table_name), [])

    def test_stopped_combined_job_resumes_where_it_left_off(self):
        self._queue_everything()

        iterator = self.services.build_job().run()
        self.assertEqual(list(islice(iterator, 2)), [1, 1])
        iterator.close()
        self.assertEqual(self.log, [("user", Op.INSERT), ("group", Op.INSERT)])
        self.assertEqual(self.services.build_job().estimate(), 4)

        remaining, output = self._run()

        self.assertEqual(remaining, 0)
        self.assertIn("Pending: 4.", output)
        self.assertEqual(
            self.log,
            [
                ("user", Op.INSERT),
                ("group", Op.INSERT),
                ("folder", Op.INSERT),
                ("grant", Op.INSERT),
                ("member", Op.INSERT),
                ("workspace", Op.INSERT),
            ],
        )

    def test_workspace_is_deleted_while_group_folder_stays(self):
        self._queue_everything()
        self._run()
        self.log.clear()
        endpoint = Mock()
        workspace_submit = NcWorkspaceSubmit(endpoint)
        self.trackers[5].create_submit = lambda _client: workspace_submit

        self.services.dispatcher.on_entity_changed("group", {**self.GROUP, "has_workspace": False}, "update")
        remaining, _output = self._run()

        self.assertEqual(remaining, 0)
        self.assertEqual(endpoint.mock_calls, [call.delete_if_exists(3)])
        self.assertEqual(self.log, [])
        self.assertEqual(self.conn.rows("nc_sync_group_nc_workspace"), [])
        folders = self.conn.rows("nc_sync_group_nc_group_folder")
        self.assertEqual(
            [(row["nc_group_folder_id"], row["pending_operation"]) for row in folders],
            [(7, Op.UNCHANGED)],
        )

    def test_unavailable_nextcloud_skips_the_job(self):
        from nextcloud_sync.nextcloud_client import NextcloudNotAvailable

        def unavailable():
            raise NextcloudNotAvailable("Missing or empty configuration keys: NEXTCLOUD_URL.")

        services = SyncServices(self.trackers, client_factory=unavailable, connect=self.conn)
        out = io.StringIO()

        with patch("nextcloud_sync.wiring.emit"):
            self.assertIsNone(run_to_completion(services.build_job(), out))
        self.assertIn("Nextcloud is not available", out.getvalue())


if __name__ == "__main__":
    unittest.main()
