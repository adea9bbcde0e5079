# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Unit tests for the top-level control flow of a btrsync run; the btrfs-facing components are mocked out."""

from __future__ import (
    annotations,
)
import argparse
import os
import subprocess
import tempfile
import unittest
from unittest.mock import (
    MagicMock,
    patch,
)

from btrsync_main import (
    argparse_cli,
    btrsync,
)
from btrsync_main.btrsync import (
    SyncSession,
)
from btrsync_main.identity import (
    DestinationIndex,
)
from btrsync_main.run_lock import (
    RunLock,
)
from btrsync_main.utils import (
    DIE_STATUS,
)
from btrsync_tests.abstract_testcase import (
    AbstractTestCase,
    make_snapshot,
)
from btrsync_tests.tools import (
    suppress_output,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestRunMain,
        TestValidate,
        TestSyncSession,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestRunMain(unittest.TestCase):

    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.log_dir = os.path.join(tmpdir.name, argparse_cli.LOG_DIR_DEFAULT)
        self.lock_file = os.path.join(tmpdir.name, "btrsync.lock")
        self.mocks: dict[str, MagicMock] = {}
        for name in ("detect_available_programs", "check_destination_not_busy", "discover", "build_index"):
            patcher = patch(f"btrsync_main.btrsync.{name}")
            self.mocks[name] = patcher.start()
            self.addCleanup(patcher.stop)
        self.mocks["discover"].return_value = [make_snapshot("/src/s1", 1.0), make_snapshot("/src/s2", 2.0)]
        self.mocks["build_index"].return_value = DestinationIndex(root="/dst")

    def parse_args(self, *extra: str) -> argparse.Namespace:
        cli = [*extra, "--log-dir", self.log_dir, "--lock-file", self.lock_file, "/src", "/dst"]
        return argparse_cli.argument_parser().parse_args(cli)

    def log_text(self) -> str:
        files = os.listdir(self.log_dir)
        self.assertEqual(1, len(files))
        with open(os.path.join(self.log_dir, files[0]), encoding="utf-8") as fd:
            return fd.read()

    @patch("btrsync_main.btrsync.apply_retention")
    @patch("btrsync_main.btrsync.replicate_snapshots", return_value=True)
    def test_success(self, replicate_mock: MagicMock, retention_mock: MagicMock) -> None:
        with suppress_output():
            btrsync.run_main(self.parse_args("--keep=3"), ["btrsync"])
        replicate_mock.assert_called_once()
        retention_mock.assert_called_once()
        self.mocks["detect_available_programs"].assert_called_once()
        self.mocks["check_destination_not_busy"].assert_called_once()
        text = self.log_text()
        self.assertIn("Success. Goodbye!", text)
        self.assertIn("Found 2 src snapshots", text)
        self.assertFalse(os.path.exists(self.lock_file))

    @patch("btrsync_main.btrsync.apply_retention")
    @patch("btrsync_main.btrsync.replicate_snapshots", return_value=False)
    def test_abort_skips_retention_and_exits_cleanly(self, replicate_mock: MagicMock, retention_mock: MagicMock) -> None:
        with suppress_output():
            btrsync.run_main(self.parse_args(), ["btrsync"])
        retention_mock.assert_not_called()
        self.assertIn("Aborted as requested", self.log_text())

    @patch("btrsync_main.btrsync.replicate_snapshots")
    def test_no_snapshots_found_is_an_error(self, replicate_mock: MagicMock) -> None:
        self.mocks["discover"].return_value = []
        with suppress_output(), self.assertRaises(SystemExit) as context:
            btrsync.run_main(self.parse_args(), ["btrsync"])
        self.assertEqual(DIE_STATUS, context.exception.code)
        replicate_mock.assert_not_called()
        self.assertIn("No snapshots found", self.log_text())

    @patch("btrsync_main.btrsync.replicate_snapshots")
    def test_failed_transfer_exits_with_die_status(self, replicate_mock: MagicMock) -> None:
        replicate_mock.side_effect = subprocess.CalledProcessError(1, ["btrfs", "receive", "/dst"])
        with suppress_output(), self.assertRaises(SystemExit) as context:
            btrsync.run_main(self.parse_args(), ["btrsync"])
        self.assertEqual(DIE_STATUS, context.exception.code)
        self.assertIn(f"Exiting btrsync with status code {DIE_STATUS}", self.log_text())
        self.assertFalse(os.path.exists(self.lock_file))

    @patch("btrsync_main.btrsync.replicate_snapshots")
    def test_concurrent_run_fails_fast(self, replicate_mock: MagicMock) -> None:
        with RunLock(self.lock_file, MagicMock()):
            with suppress_output(), self.assertRaises(SystemExit) as context:
                btrsync.run_main(self.parse_args(), ["btrsync"])
        self.assertEqual(DIE_STATUS, context.exception.code)
        replicate_mock.assert_not_called()

    def test_main_prints_version(self) -> None:
        with patch("sys.argv", ["btrsync", "--version"]), suppress_output(), self.assertRaises(SystemExit) as context:
            btrsync.main()
        self.assertEqual(0, context.exception.code)


#############################################################################
class TestValidate(AbstractTestCase):

    def make_validated_session(self, *locations: str) -> SyncSession:
        session = self.make_session(["--no-privilege-elevation", *locations])
        with patch("btrsync_main.btrsync.detect_available_programs"):
            session.validate()
        return session

    def test_local_locations(self) -> None:
        p = self.make_validated_session("/a", "/b", "/dst").params
        self.assertEqual(["/a", "/b"], p.src.root_paths)
        self.assertEqual("/dst", p.dst.root_path)
        self.assertEqual("", p.src.ssh_user_host)
        self.assertEqual("", p.dst.sudo)

    def test_remote_destination(self) -> None:
        p = self.make_validated_session("/a", "alice@backup:/mnt/b").params
        self.assertEqual("alice@backup", p.dst.ssh_user_host)
        self.assertEqual("/mnt/b", p.dst.root_path)

    def test_sources_must_share_one_host(self) -> None:
        with self.assertRaises(SystemExit) as context:
            self.make_validated_session("h1:/a", "h2:/b", "/dst")
        self.assertIn("same host", str(context.exception))

    def test_source_and_destination_must_differ(self) -> None:
        with self.assertRaises(SystemExit):
            self.make_validated_session("/data", "/data/")

    def test_sudo_cmd(self) -> None:
        session = self.make_session()
        with patch("btrsync_main.btrsync.os.geteuid", return_value=1000):
            self.assertEqual("sudo -n", session.sudo_cmd("alice@host", "alice"))
            self.assertEqual("sudo -n", session.sudo_cmd("", ""))
            self.assertEqual("", session.sudo_cmd("root@host", "root"))
        with patch("btrsync_main.btrsync.os.geteuid", return_value=0):
            self.assertEqual("", session.sudo_cmd("", ""))
        session = self.make_session(["--no-privilege-elevation", "/src", "/dst"])
        with patch("btrsync_main.btrsync.os.geteuid", return_value=1000):
            self.assertEqual("", session.sudo_cmd("", ""))

    def test_disabled_sudo_dies_when_needed(self) -> None:
        session = self.make_session(["--sudo-program=-", "/src", "/dst"])
        with patch("btrsync_main.btrsync.os.geteuid", return_value=1000), self.assertRaises(SystemExit):
            session.sudo_cmd("", "")


#############################################################################
class TestSyncSession(AbstractTestCase):

    def test_source_lookup_tables(self) -> None:
        session = self.make_session()
        s1 = make_snapshot("/src/s1", 1.0, received_uuid="r-1")
        s2 = make_snapshot("/src/s2", 2.0)
        session.set_sources([s1, s2])
        self.assertIs(s2, session.source_by_path["/src/s2"])
        self.assertIs(s1, session.source_by_uuid["uuid-s1"])
        self.assertEqual({"r-1": s1}, session.source_by_received_uuid())
        self.assertIs(session.source_by_received_uuid(), session.source_by_received_uuid())
        self.assertEqual(2, session.num_snapshots_found)

    @patch("btrsync_main.btrsync.terminate_process_subtree")
    def test_second_cancellation_terminates_immediately(self, terminate_mock: MagicMock) -> None:
        session = self.make_session()
        self.assertFalse(session.abort_requested)
        session.request_abort({})
        self.assertTrue(session.abort_requested)
        terminate_mock.assert_not_called()
        session.request_abort({})
        terminate_mock.assert_called_once_with(except_current_process=True)
