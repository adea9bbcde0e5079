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
"""Unit tests for the CLI parser, its custom argparse actions, and the Params and Remote configuration objects."""

from __future__ import (
    annotations,
)
import os
import unittest
from unittest.mock import (
    patch,
)

from btrsync_main import (
    argparse_cli,
)
from btrsync_main.btrsync import (
    parse_location,
)
from btrsync_main.detect import (
    DISABLE_PRG,
)
from btrsync_tests.abstract_testcase import (
    AbstractTestCase,
)
from btrsync_tests.tools import (
    stop_on_failure_subtest,
    suppress_output,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestArgumentParser,
        TestParams,
        TestRemote,
        TestParseLocation,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestArgumentParser(AbstractTestCase):

    def test_locations_split_into_sources_and_destination(self) -> None:
        args = self.argparser_parse_args(["/snaps/a", "host:/snaps/b", "user@backup:/mnt/backup"])
        self.assertEqual(["/snaps/a", "host:/snaps/b"], args.src_locations)
        self.assertEqual("user@backup:/mnt/backup", args.dst_location)

    def test_at_least_two_locations_are_required(self) -> None:
        with suppress_output(), self.assertRaises(SystemExit):
            self.argparser_parse_args(["/snaps/a"])

    def test_empty_location_is_rejected(self) -> None:
        for locations in (["/snaps/a", " "], ["host:", "/dst"]):
            with stop_on_failure_subtest(locations=locations), suppress_output(), self.assertRaises(SystemExit):
                self.argparser_parse_args(locations)

    def test_defaults(self) -> None:
        args = self.argparser_parse_args(["/src", "/dst"])
        self.assertIsNone(args.keep)
        self.assertFalse(args.delete)
        self.assertEqual(1, args.max_depth)
        self.assertEqual(0, args.parent_depth)
        self.assertEqual(2, args.retries)
        self.assertEqual(DISABLE_PRG, args.compression_program)
        self.assertFalse(args.dryrun)

    def test_keep_must_be_positive(self) -> None:
        self.assertEqual(3, self.argparser_parse_args(["-k", "3", "/src", "/dst"]).keep)
        with suppress_output(), self.assertRaises(SystemExit):
            self.argparser_parse_args(["--keep", "0", "/src", "/dst"])

    def test_port_range(self) -> None:
        self.assertEqual(2222, self.argparser_parse_args(["-p", "2222", "/src", "h:/dst"]).ssh_dst_port)
        with suppress_output(), self.assertRaises(SystemExit):
            self.argparser_parse_args(["--ssh-dst-port", "70000", "/src", "h:/dst"])

    def test_compression_shortcuts(self) -> None:
        self.assertEqual("xz", self.argparser_parse_args(["-z", "/src", "/dst"]).compression_program)
        self.assertEqual("pbzip2", self.argparser_parse_args(["-Z", "/src", "/dst"]).compression_program)
        self.assertEqual("zstd", self.argparser_parse_args(["--compression-program=zstd", "/src", "/dst"]).compression_program)

    def test_ssh_config_file_must_not_contain_shell_chars(self) -> None:
        with suppress_output(), self.assertRaises(SystemExit):
            self.argparser_parse_args(["--ssh-config-file", "a;b", "/src", "/dst"])

    def test_version(self) -> None:
        with suppress_output(), self.assertRaises(SystemExit) as context:
            argparse_cli.argument_parser().parse_args(["--version"])
        self.assertEqual(0, context.exception.code)


#############################################################################
class TestParams(AbstractTestCase):

    def test_params_from_args(self) -> None:
        args = self.argparser_parse_args(["-k", "5", "-d", "-c", "-s", "-P", "2", "-n", "/a", "/b", "/dst"])
        p = self.make_params(args)
        self.assertEqual(["/a", "/b"], p.src_locations)
        self.assertEqual("/dst", p.dst_location)
        self.assertEqual(5, p.keep)
        self.assertTrue(p.delete_orphans)
        self.assertTrue(p.clone)
        self.assertTrue(p.sequential_seed)
        self.assertEqual(2, p.parent_depth)
        self.assertTrue(p.dry_run)
        self.assertEqual("Dry Deleting", p.dry("Deleting"))

    def test_no_retry(self) -> None:
        p = self.make_params(self.argparser_parse_args(["--no-retry", "--retries", "5", "/src", "/dst"]))
        self.assertEqual(0, p.retry_policy.retries)

    def test_verbose_btrfs(self) -> None:
        self.assertFalse(self.make_params(self.argparser_parse_args(["-v", "/src", "/dst"])).verbose_btrfs)
        self.assertTrue(self.make_params(self.argparser_parse_args(["-v", "-v", "/src", "/dst"])).verbose_btrfs)

    def test_split_args(self) -> None:
        p = self.make_params(self.argparser_parse_args(["/src", "/dst"]))
        self.assertEqual(["sudo", "-n", "btrfs", "send", "/x"], p.split_args(" sudo -n  btrfs send ", "/x"))
        self.assertEqual(["find", "/x"], p.split_args("find", "", "/x"))
        with self.assertRaises(SystemExit):
            p.split_args("foo 'bar'")

    def test_split_args_rejects_quotes_in_compression_opts(self) -> None:
        args = self.argparser_parse_args(["--compression-program-opts=-T0 '-9'", "/src", "/dst"])
        with self.assertRaises(SystemExit):
            self.make_params(args)

    def test_inject_params_substitute_programs(self) -> None:
        args = self.argparser_parse_args(["/src", "/dst"])
        p = self.make_params(args, inject_params={"inject_unavailable_btrfs": True, "inject_failing_ps": True})
        self.assertEqual("btrfs-xxx", p.btrfs_program)
        self.assertEqual("false", p.ps_program)

    def test_lock_file_default(self) -> None:
        p = self.make_params(self.argparser_parse_args(["/src", "/dst"]))
        self.assertEqual("btrsync.lock", os.path.basename(p.lock_file))
        p = self.make_params(self.argparser_parse_args(["--lock-file", "/tmp/x.lock", "/src", "/dst"]))
        self.assertEqual("/tmp/x.lock", p.lock_file)

    def test_is_program_available(self) -> None:
        p = self.make_params(self.argparser_parse_args(["/src", "/dst"]))
        p.available_programs["src"] = {"btrfs": ""}
        self.assertTrue(p.is_program_available("btrfs", "src"))
        self.assertFalse(p.is_program_available("btrfs", "dst"))
        self.assertFalse(p.is_program_available("zstd", "src"))


#############################################################################
class TestRemote(AbstractTestCase):

    def test_local_ssh_command_is_empty_for_local_host(self) -> None:
        p = self.make_params(self.argparser_parse_args(["/src", "/dst"]))
        self.assertEqual([], p.src.local_ssh_command())

    def test_local_ssh_command_for_remote_host(self) -> None:
        args = self.argparser_parse_args(["-p", "2222", "--ssh-config-file", "my_btrsync_ssh_config", "/src", "/dst"])
        p = self.make_params(args)
        p.dst.ssh_user_host = "alice@backup"
        with patch("btrsync_main.configuration.os.makedirs"):
            cmd = p.dst.local_ssh_command()
        self.assertEqual("ssh", cmd[0])
        self.assertIn("-oBatchMode=yes", cmd)
        self.assertEqual("my_btrsync_ssh_config", cmd[cmd.index("-F") + 1])
        self.assertEqual("2222", cmd[cmd.index("-p") + 1])
        self.assertIn("-oControlMaster=auto", cmd)
        self.assertEqual("alice@backup", cmd[-1])

    def test_ssh_config_file_basename_is_validated(self) -> None:
        args = self.argparser_parse_args(["--ssh-config-file", "my_ssh_config", "/src", "/dst"])
        with self.assertRaises(SystemExit):
            self.make_params(args)

    def test_disabled_ssh_cannot_talk_to_remote_host(self) -> None:
        p = self.make_params(self.argparser_parse_args(["--ssh-program", DISABLE_PRG, "/src", "/dst"]))
        p.dst.ssh_user_host = "backup"
        with self.assertRaises(SystemExit):
            p.dst.local_ssh_command()

    def test_repr_excludes_params(self) -> None:
        p = self.make_params(self.argparser_parse_args(["/src", "/dst"]))
        self.assertNotIn("'params'", repr(p.src))
        self.assertIn("'location': 'src'", repr(p.src))


#############################################################################
class TestParseLocation(unittest.TestCase):

    def test_local_path(self) -> None:
        self.assertEqual(("", "", "", "/snaps"), parse_location("/snaps"))

    def test_host_and_path(self) -> None:
        self.assertEqual(("", "backup", "backup", "/mnt/b"), parse_location("backup:/mnt/b"))

    def test_user_host_and_path(self) -> None:
        self.assertEqual(("alice", "backup", "alice@backup", "/mnt/b"), parse_location("alice@backup:/mnt/b"))

    def test_ipv6_host(self) -> None:
        self.assertEqual(("", "::1", "::1", "/mnt/b"), parse_location("||1:/mnt/b"))

    def test_dash_host_means_local(self) -> None:
        self.assertEqual(("", "", "", "/mnt/b"), parse_location("-:/mnt/b"))

    def test_colon_within_path_is_kept(self) -> None:
        self.assertEqual(("", "", "", "/mnt/a:b"), parse_location("/mnt/a:b"))

    def test_invalid_inputs(self) -> None:
        for text in ("bad;host:/x", "a b@host:/x", "host:/x'y", "host:", "-opt:/x"):
            with stop_on_failure_subtest(text=text), self.assertRaises(SystemExit):
                parse_location(text)
