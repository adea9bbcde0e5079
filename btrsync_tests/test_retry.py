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
"""Unit tests for run_with_retries() helper."""

from __future__ import (
    annotations,
)
import argparse
import logging
import subprocess
import unittest
from typing import (
    Any,
)
from unittest.mock import (
    MagicMock,
    patch,
)

from btrsync_main.argparse_cli import (
    argument_parser,
)
from btrsync_main.retry import (
    Retry,
    RetryableError,
    RetryPolicy,
    run_with_retries,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestRetryPolicy,
        TestRunWithRetries,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def make_policy(retries: int, no_retry: bool = False, max_elapsed_secs: float | None = None) -> RetryPolicy:
    args = argparse.Namespace(
        no_retry=no_retry,
        retries=retries,
        retry_min_sleep_secs=0,
        retry_max_sleep_secs=0,
        retry_max_elapsed_secs=max_elapsed_secs,
    )
    return RetryPolicy(args)


#############################################################################
class TestRetryPolicy(unittest.TestCase):

    def test_no_retry_overrides_retries(self) -> None:
        self.assertEqual(0, make_policy(retries=5, no_retry=True).retries)
        self.assertEqual(5, make_policy(retries=5).retries)
        self.assertEqual(0, RetryPolicy.no_retries().retries)

    def test_sleep_nanos_are_clamped(self) -> None:
        policy = make_policy(retries=1)
        self.assertEqual(1, policy.min_sleep_nanos)
        self.assertEqual(1, policy.max_sleep_nanos)
        self.assertIn("retries: 1", repr(policy))

    def test_default_cli_policy_is_bounded_by_retry_count_only(self) -> None:
        policy = RetryPolicy(argument_parser().parse_args(["/src", "/dst"]))
        self.assertEqual(2, policy.retries)
        self.assertIsNone(policy.max_elapsed_nanos)
        two_days_nanos = 2 * 24 * 3600 * 1_000_000_000
        self.assertTrue(policy.allows_retry(1, two_days_nanos))
        self.assertFalse(policy.allows_retry(2, 0))

    def test_elapsed_cap_applies_only_when_given(self) -> None:
        policy = make_policy(retries=3, max_elapsed_secs=10)
        self.assertTrue(policy.allows_retry(0, 9 * 1_000_000_000))
        self.assertFalse(policy.allows_retry(0, 10 * 1_000_000_000))


#############################################################################
class TestRunWithRetries(unittest.TestCase):

    def setUp(self) -> None:
        self.log = MagicMock(spec=logging.Logger)

    def test_success_on_first_attempt(self) -> None:
        def fn(x: int, retry: Retry) -> int:
            self.assertEqual(0, retry.count)
            return x * 2

        self.assertEqual(42, run_with_retries(self.log, make_policy(retries=2), fn, 21))

    @patch("btrsync_main.retry.time.sleep")
    def test_success_after_retries(self, mock_sleep: MagicMock) -> None:
        counts: list[int] = []

        def fn(retry: Retry) -> str:
            counts.append(retry.count)
            if retry.count < 2:
                raise RetryableError("fail") from subprocess.CalledProcessError(1, "btrfs")
            return "ok"

        self.assertEqual("ok", run_with_retries(self.log, make_policy(retries=2), fn))
        self.assertEqual([0, 1, 2], counts)
        self.assertEqual(2, mock_sleep.call_count)

    @patch("btrsync_main.retry.time.sleep")
    def test_attempts_are_bounded_and_cause_is_reraised(self, mock_sleep: MagicMock) -> None:
        for retries in (0, 1, 3):
            attempts: list[int] = []

            def fn(retry: Retry, attempts: list[int] = attempts) -> Any:
                attempts.append(retry.count)
                raise RetryableError("fail") from subprocess.CalledProcessError(7, "btrfs receive")

            with self.assertRaises(subprocess.CalledProcessError) as context:
                run_with_retries(self.log, make_policy(retries=retries), fn)
            self.assertEqual(7, context.exception.returncode)
            self.assertEqual(1 + retries, len(attempts))

    def test_retryable_error_without_cause_is_reraised_as_is(self) -> None:
        def fn(retry: Retry) -> None:
            raise RetryableError("fail")

        with self.assertRaises(RetryableError):
            run_with_retries(self.log, make_policy(retries=0), fn)

    def test_non_retryable_error_propagates_immediately(self) -> None:
        attempts: list[int] = []

        def fn(retry: Retry) -> None:
            attempts.append(retry.count)
            raise ValueError("bug")

        with self.assertRaises(ValueError):
            run_with_retries(self.log, make_policy(retries=3), fn)
        self.assertEqual([0], attempts)

    def test_no_retry_once_max_elapsed_time_is_exceeded(self) -> None:
        attempts: list[int] = []

        def fn(retry: Retry) -> None:
            attempts.append(retry.count)
            raise RetryableError("fail") from subprocess.CalledProcessError(1, "btrfs")

        with self.assertRaises(subprocess.CalledProcessError):
            run_with_retries(self.log, make_policy(retries=3, max_elapsed_secs=0), fn)
        self.assertEqual([0], attempts)


    @patch("btrsync_main.retry.time.sleep")
    @patch("btrsync_main.retry.time.monotonic_ns")
    def test_long_running_failed_transfers_are_retried_with_default_options(
        self, mock_monotonic_ns: MagicMock, mock_sleep: MagicMock
    ) -> None:
        two_hours_nanos = 2 * 3600 * 1_000_000_000
        clock: list[int] = [0]
        mock_monotonic_ns.side_effect = lambda: clock[0]
        attempts: list[int] = []

        def fn(retry: Retry) -> None:
            attempts.append(retry.count)
            clock[0] += two_hours_nanos  # each full send runs for two hours before it fails
            raise RetryableError("fail") from subprocess.CalledProcessError(1, "btrfs send")

        policy = RetryPolicy(argument_parser().parse_args(["/src", "/dst"]))
        with self.assertRaises(subprocess.CalledProcessError):
            run_with_retries(self.log, policy, fn)
        self.assertEqual([0, 1, 2], attempts)
        self.assertEqual(2, mock_sleep.call_count)

    @patch("btrsync_main.retry.time.sleep")
    @patch("btrsync_main.retry.time.monotonic_ns")
    def test_explicit_elapsed_cap_stops_retrying_slow_transfers(
        self, mock_monotonic_ns: MagicMock, mock_sleep: MagicMock
    ) -> None:
        clock: list[int] = [0]
        mock_monotonic_ns.side_effect = lambda: clock[0]
        attempts: list[int] = []

        def fn(retry: Retry) -> None:
            attempts.append(retry.count)
            clock[0] += 2 * 3600 * 1_000_000_000
            raise RetryableError("fail") from subprocess.CalledProcessError(1, "btrfs send")

        with self.assertRaises(subprocess.CalledProcessError):
            run_with_retries(self.log, make_policy(retries=2, max_elapsed_secs=3600), fn)
        self.assertEqual([0], attempts)
        mock_sleep.assert_not_called()
