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
"""Backoff between attempts of a failed snapshot transfer.

``_transfer()`` reports a failed pipeline as a ``RetryableError`` raised from the ``CalledProcessError``. Here we decide
whether the snapshot gets another attempt, sleep a random, doubling delay before it, and hand the ``CalledProcessError``
back to the caller once the policy allows no more attempts. A transfer is attempted at most ``1 + --retries`` times.
"""

from __future__ import (
    annotations,
)
import argparse
import random
import time
from dataclasses import (
    dataclass,
)
from logging import (
    Logger,
)
from typing import (
    Any,
    Callable,
    TypeVar,
)

from btrsync_main.utils import (
    human_readable_duration,
)

NANOS_PER_SEC: int = 1_000_000_000


#############################################################################
class RetryPolicy:
    """How many more times a failed transfer is attempted, and how long to back off in between."""

    def __init__(self, args: argparse.Namespace) -> None:
        self.retries: int = 0 if args.no_retry else args.retries
        self.min_sleep_secs: float = args.retry_min_sleep_secs
        self.max_sleep_secs: float = args.retry_max_sleep_secs
        self.max_elapsed_secs: float | None = args.retry_max_elapsed_secs  # None: only the retry count limits attempts
        self.min_sleep_nanos: int = max(1, int(self.min_sleep_secs * NANOS_PER_SEC))
        self.max_sleep_nanos: int = max(self.min_sleep_nanos, int(self.max_sleep_secs * NANOS_PER_SEC))
        self.max_elapsed_nanos: int | None = None
        if self.max_elapsed_secs is not None:
            self.max_elapsed_nanos = int(self.max_elapsed_secs * NANOS_PER_SEC)
        assert self.retries >= 0

    def __repr__(self) -> str:
        return (
            f"retries: {self.retries}, min_sleep_secs: {self.min_sleep_secs}, "
            f"max_sleep_secs: {self.max_sleep_secs}, max_elapsed_secs: {self.max_elapsed_secs}"
        )

    def allows_retry(self, retry_count: int, elapsed_nanos: int) -> bool:
        """Returns True if a transfer that has been retried ``retry_count`` times so far may be attempted again."""
        if retry_count >= self.retries:
            return False
        return self.max_elapsed_nanos is None or elapsed_nanos < self.max_elapsed_nanos

    @classmethod
    def no_retries(cls) -> RetryPolicy:
        return cls(
            argparse.Namespace(
                no_retry=True, retries=0, retry_min_sleep_secs=0, retry_max_sleep_secs=0, retry_max_elapsed_secs=None
            )
        )


#############################################################################
T = TypeVar("T")


def run_with_retries(log: Logger, policy: RetryPolicy, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Calls ``fn(*args, retry=Retry(n), **kwargs)`` until it returns, or until the policy permits no further attempt.

    Only ``RetryableError`` triggers another attempt; any other exception propagates right away. Once attempts run out, the
    exception the ``RetryableError`` was raised from is re-raised, so callers see the ``CalledProcessError`` of the
    failed transfer.
    """
    rand: random.SystemRandom = random.SystemRandom()
    sleep_ceiling_nanos: int = policy.min_sleep_nanos
    retry_count: int = 0
    start_time_nanos: int = time.monotonic_ns()
    while True:
        try:
            return fn(*args, **kwargs, retry=Retry(retry_count))
        except RetryableError as retryable_error:
            elapsed_nanos: int = time.monotonic_ns() - start_time_nanos
            if not policy.allows_retry(retry_count, elapsed_nanos):
                if policy.retries > 0:
                    log.warning(
                        "Giving up after %s attempts within %s", retry_count + 1, human_readable_duration(elapsed_nanos)
                    )
                cause: BaseException | None = retryable_error.__cause__
                if cause is None:
                    raise
                raise cause.with_traceback(cause.__traceback__) from cause.__cause__
            retry_count += 1
            sleep_nanos: int = rand.randint(policy.min_sleep_nanos, sleep_ceiling_nanos)
            log.info(f"Retrying [{retry_count}/{policy.retries}] in {human_readable_duration(sleep_nanos)} ...")
            time.sleep(sleep_nanos / NANOS_PER_SEC)
            sleep_ceiling_nanos = min(policy.max_sleep_nanos, 2 * sleep_ceiling_nanos)


#############################################################################
class RetryableError(Exception):
    """Raised from the error of a failed transfer attempt that may succeed if attempted again."""


#############################################################################
@dataclass(frozen=True)
class Retry:
    """Number of attempts that preceded the current one; 0 on the first attempt."""

    count: int
