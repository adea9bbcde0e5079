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
"""Logging helpers that build the per-run logger; centralizes logger setup so that all log lines share uniform formatting.

Each SyncSession has its own private Logger object that is not registered with the logging manager, so that tests can run
many sessions in the same Python process without interfering with each other. Callers close the loggers they own via
``reset_logger()``.
"""

from __future__ import (
    annotations,
)
import contextlib
import logging
import sys
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    TYPE_CHECKING,
    Final,
)

from btrsync_main.utils import (
    LOG_STDERR,
    LOG_STDOUT,
    LOG_TRACE,
    PROG_NAME,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from btrsync_main.configuration import (
        LogParams,
    )


def _resolve_logger_name(logger_name_suffix: str) -> str:
    """Returns the logger name for the given optional logger suffix."""
    logger_name: str = "btrsync_main.btrsync"
    return logger_name + "." + logger_name_suffix if logger_name_suffix else logger_name


def reset_logger(log: Logger) -> None:
    """Removes and closes logging handlers (and closes their files) and resets logger to default state."""
    for handler in log.handlers.copy():
        log.removeHandler(handler)
        with contextlib.suppress(BrokenPipeError):
            handler.flush()
        handler.close()
    for _filter in log.filters.copy():
        log.removeFilter(_filter)
    log.setLevel(logging.NOTSET)
    log.propagate = True


def get_logger(log_params: LogParams, log: Logger | None = None, logger_name_suffix: str = "") -> Logger:
    """Returns a logger configured from CLI arguments, or the given third party logger if one is passed."""
    _add_custom_loglevels()
    if log is not None:
        assert isinstance(log, Logger)
        return log  # use third party provided logger object
    return _get_default_logger(log_params, logger_name_suffix=logger_name_suffix)


def _get_default_logger(log_params: LogParams, logger_name_suffix: str = "") -> Logger:
    """Creates the default logger with a stdout handler and a handler for the log file of the current run."""
    log = Logger(_resolve_logger_name(logger_name_suffix))  # noqa: LOG001 do not register logger with Logger.manager
    log.setLevel(log_params.log_level)
    log.propagate = False  # don't propagate log messages up to the root logger to avoid emitting duplicate messages

    handler: logging.Handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(get_default_log_formatter())
    handler.setLevel(log_params.log_level)
    log.addHandler(handler)

    if log_params.log_file:
        handler = logging.FileHandler(log_params.log_file, encoding="utf-8")
        handler.setFormatter(get_default_log_formatter())
        handler.setLevel(log_params.log_level)
        log.addHandler(handler)

    # perf: tell logging framework not to gather unnecessary expensive info for each log record
    logging.logProcesses = False
    logging.logThreads = False
    logging.logMultiprocessing = False
    return log


LOG_LEVEL_PREFIXES: Final[dict[int, str]] = {
    logging.CRITICAL: "[C] CRITICAL:",
    logging.ERROR: "[E] ERROR:",
    logging.WARNING: "[W]",
    logging.INFO: "[I]",
    logging.DEBUG: "[D]",
    LOG_TRACE: "[T]",
}


def get_default_log_formatter(prefix: str = "") -> logging.Formatter:
    """Returns a formatter for btrsync logs with optional prefix; output of child processes is emitted as-is."""
    level_prefixes_: dict[int, str] = LOG_LEVEL_PREFIXES.copy()
    log_stderr_: int = LOG_STDERR
    log_stdout_: int = LOG_STDOUT

    class DefaultLogFormatter(logging.Formatter):
        """Formatter adding timestamps, level prefix and column padding."""

        def format(self, record: logging.LogRecord) -> str:
            levelno: int = record.levelno
            if levelno != log_stderr_ and levelno != log_stdout_:  # emit stdout and stderr "as-is" (no formatting)
                timestamp: str = datetime.now().isoformat(sep=" ", timespec="seconds")  # 2024-09-03 12:26:15
                ts_level: str = f"{timestamp} {level_prefixes_.get(levelno, '')} "
                msg: str = str(record.msg)
                i: int = msg.find("%s")
                msg = ts_level + msg
                if i >= 1:
                    i += len(ts_level)
                    msg = msg[0:i].ljust(54) + msg[i:]  # right-pad msg if record.msg contains "%s" unless at start
                if record.exc_info or record.exc_text or record.stack_info:
                    record.msg = msg
                    msg = super().format(record)
                elif record.args:
                    msg = msg % record.args
            else:
                msg = super().format(record)
            return prefix + msg

    return DefaultLogFormatter()


def get_simple_logger(program: str = PROG_NAME) -> Logger:
    """Returns a minimal stderr logger, used before the per-run log file is known."""
    level_prefixes_: dict[int, str] = LOG_LEVEL_PREFIXES.copy()

    class LevelFormatter(logging.Formatter):
        """Injects level prefix and program name into log records."""

        def format(self, record: logging.LogRecord) -> str:
            record.level_prefix = level_prefixes_.get(record.levelno, "")
            record.program = program
            return super().format(record)

    _add_custom_loglevels()
    log = Logger(program)  # noqa: LOG001 do not register logger with Logger.manager to avoid potential memory leak
    log.setLevel(logging.INFO)
    log.propagate = False
    handler = logging.StreamHandler()
    handler.setFormatter(
        LevelFormatter(fmt="%(asctime)s %(level_prefix)s [%(program)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    log.addHandler(handler)
    return log


def _add_custom_loglevels() -> None:
    """Registers the custom TRACE, STDERR and STDOUT levels with the standard python logging framework."""
    logging.addLevelName(LOG_TRACE, "TRACE")
    logging.addLevelName(LOG_STDERR, "STDERR")
    logging.addLevelName(LOG_STDOUT, "STDOUT")
