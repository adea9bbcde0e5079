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
"""Unit tests for retention: pruning beyond --keep and deletion of orphans with --delete."""

from __future__ import (
    annotations,
)
import subprocess
import unittest
from typing import (
    Any,
)
from unittest.mock import (
    patch,
)

from btrsync_main.identity import (
    DestinationIndex,
)
from btrsync_main.retention import (
    apply_retention,
    delete_subvolumes,
    prune,
    prune_orphans,
)
from btrsync_tests.abstract_testcase import (
    AbstractTestCase,
    FakeHost,
    make_snapshot,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestPrune,
        TestApplyRetention,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestPrune(unittest.TestCase):

    def test_prune_keeps_most_recent(self) -> None:
        paths = ["/dst/D1", "/dst/D2", "/dst/D3", "/dst/D4", "/dst/D5"]
        self.assertEqual(["/dst/D1", "/dst/D2", "/dst/D3"], prune(paths, 2))
        self.assertEqual([], prune(paths, 5))
        self.assertEqual([], prune(paths, 10))
        self.assertEqual(paths[0:4], prune(paths, 1))
        self.assertEqual([], prune([], 1))

    def test_prune_orphans(self) -> None:
        self.assertEqual(["/dst/B"], prune_orphans(["/dst/A", "/dst/B", "/dst/C"], ["A", "C"]))
        self.assertEqual([], prune_orphans(["/dst/home/A"], iter(["A"])))
        self.assertEqual(["/dst/A"], prune_orphans(["/dst/A"], []))


#############################################################################
class TestApplyRetention(AbstractTestCase):

    def setUp(self) -> None:
        self.host = FakeHost()
        patcher = patch("btrsync_main.connection.run_ssh_command", side_effect=self.host)
        patcher.start()
        self.addCleanup(patcher.stop)

    def make_index(self, *names: str) -> DestinationIndex:
        index = DestinationIndex(root="/dst")
        for i, name in enumerate(names):
            self.host.add_subvolume("/dst/" + name, "d-" + name, "2024-01-01 00:00:00 +0000", received_uuid="u-" + name)
            index.add("u-" + name, "/dst/" + name, float(i))
        return index

    def test_keep(self) -> None:
        session = self.make_session(["--keep=2", "/src", "/dst"])
        index = self.make_index("D1", "D2", "D3", "D4", "D5")
        apply_retention(session, index, [make_snapshot("/src/D5", 5.0)])
        self.assertEqual(["/dst/D4", "/dst/D5"], index.paths)
        self.assertEqual({"/dst/D4", "/dst/D5"}, set(self.host.subvolumes))
        self.assertNotIn("u-D1", index)
        self.assertEqual(3, session.num_snapshots_deleted)

    def test_delete_orphans(self) -> None:
        session = self.make_session(["--delete", "/src", "/dst"])
        index = self.make_index("A", "B", "C")
        apply_retention(session, index, [make_snapshot("/src/A", 1.0), make_snapshot("/src/C", 3.0)])
        self.assertEqual(["/dst/A", "/dst/C"], index.paths)
        self.assertNotIn("/dst/B", self.host.subvolumes)

    def test_orphans_are_deleted_before_keep_is_applied(self) -> None:
        session = self.make_session(["--delete", "--keep=1", "/src", "/dst"])
        index = self.make_index("A", "B", "C")
        apply_retention(session, index, [make_snapshot("/src/A", 1.0), make_snapshot("/src/B", 2.0)])
        self.assertEqual(["/dst/B"], index.paths)
        self.assertEqual(2, session.num_snapshots_deleted)

    def test_nothing_is_deleted_by_default(self) -> None:
        session = self.make_session()
        index = self.make_index("A", "B")
        apply_retention(session, index, [])
        self.assertEqual(["/dst/A", "/dst/B"], index.paths)
        self.assertEqual(0, len(self.host.cmds))

    def test_dryrun_deletes_nothing(self) -> None:
        session = self.make_session(["--dryrun", "--keep=1", "/src", "/dst"])
        index = self.make_index("A", "B")
        apply_retention(session, index, [])
        self.assertEqual({"/dst/A", "/dst/B"}, set(self.host.subvolumes))
        self.assertEqual(["/dst/B"], index.paths)

    def test_failed_delete_is_reported_and_skipped(self) -> None:
        session = self.make_session(["--keep=1", "/src", "/dst"])
        index = self.make_index("A", "B", "C")

        def fail_on_a(*args: Any, **kwargs: Any) -> str:
            if kwargs["cmd"][-1] == "/dst/A":
                raise subprocess.CalledProcessError(1, kwargs["cmd"], stderr="ERROR: Device or resource busy")
            return self.host(*args, **kwargs)

        with patch("btrsync_main.connection.run_ssh_command", side_effect=fail_on_a):
            deleted = delete_subvolumes(session, session.params.dst, ["/dst/A", "/dst/B"])
        self.assertEqual(["/dst/B"], deleted)
        self.assertIn("/dst/A", self.host.subvolumes)
        session.params.log.warning.assert_called()
