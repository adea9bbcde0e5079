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
"""Documentation, definition of input data and ArgumentParser used by the 'btrsync' CLI."""

from __future__ import (
    annotations,
)
import argparse
from typing import (
    Final,
)

from btrsync_main.argparse_actions import (
    CheckRange,
    LocationsAction,
    NonEmptyStringAction,
    SafeDirectoryNameAction,
    SSHConfigFileNameAction,
)
from btrsync_main.detect import (
    COMPRESSION_PROGRAMS,
    DISABLE_PRG,
)
from btrsync_main.utils import (
    ENV_VAR_PREFIX,
    PROG_NAME,
)

# constants:
__version__: Final[str] = "1.0.0"
PROG_AUTHOR: Final[str] = "Wolfgang Hoschek"
LOG_DIR_DEFAULT: Final[str] = PROG_NAME + "-logs"


def argument_parser() -> argparse.ArgumentParser:
    """Returns the CLI parser used by btrsync."""
    # fmt: off
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog=PROG_NAME,
        allow_abbrev=False,
        formatter_class=argparse.RawTextHelpFormatter,
        description=f"""
*{PROG_NAME} is a backup command line tool that reliably replicates read-only btrfs snapshots from one or more
(local or remote) source directories to a (local or remote) destination directory, using
btrfs send/receive/subvolume delete and ssh tunnel as directed. It prefers incremental transfers whenever a
suitable seed snapshot already exists at the destination.*

Each SRC is either a read-only btrfs snapshot, or a directory whose immediate children (up to --max-depth levels)
are read-only btrfs snapshots. All source snapshots are replicated in order of their creation time. A snapshot
that already exists at the destination (as identified by its btrfs UUID or received UUID) is skipped, so running
{PROG_NAME} twice in a row transfers nothing the second time.

For each snapshot that must be transferred, {PROG_NAME} picks the seed (the 'btrfs send -p' parent) as follows:
with --sequential the most recently transferred snapshot of this run; otherwise the source snapshot already present
at the destination whose UUID equals the parent UUID of the snapshot; otherwise the most recently created source
snapshot already present at the destination. If there is no such snapshot, a full transfer is made.

{PROG_NAME} treats the source as read-only. In normal operation it treats the destination as append-only, unless
--keep or --delete is specified. With the --dryrun flag, {PROG_NAME} also treats the destination as read-only.

Only one {PROG_NAME} process may run on a host at any time. A second invocation fails fast while the first one
is still running, and so does an invocation whose destination is busy with another 'btrfs receive'.

Sending SIGINT or SIGTERM once makes {PROG_NAME} finish the snapshot that is currently being transferred, and
then exit with status 0. Sending it a second time terminates the transfer immediately, without retrying it, and
exits with status 1.

# Exit Codes

0 on success, including a clean abort, and 1 on any error.

# Usage

```$ {PROG_NAME} /snapshots/home /mnt/backup```

```$ {PROG_NAME} --keep 30 --delete -z /snapshots/home root@backup-host:/mnt/backup```

```$ {PROG_NAME} --parent-depth 1 /snapshots/home /snapshots/root alice@backup-host:/mnt/backup```
""")

    parser.add_argument(
        "locations", nargs="+", action=LocationsAction, metavar="SRC [SRC ...] DST",
        help="One or more source locations followed by exactly one destination location. Each location has the format "
             "[[user@]host:]path. If the host part is missing, the path is on the local host.\n\n")
    parser.add_argument(
        "--keep", "-k", type=int, min=1, action=CheckRange, default=None, metavar="INT",
        help="After replication, delete the oldest destination snapshots such that only the most recent INT remain. "
             "Default is to keep all destination snapshots.\n\n")
    parser.add_argument(
        "--delete", "-d", action="store_true",
        help="After replication, delete destination snapshots whose name does not match the name of any source "
             "snapshot.\n\n")
    parser.add_argument(
        "--max-depth", type=int, min=1, default=1, action=CheckRange, metavar="INT",
        help="Maximum number of directory levels below each SRC directory to search for snapshots "
             "(default: %(default)s).\n\n")
    parser.add_argument(
        "--parent-depth", "-P", type=int, min=0, default=0, action=CheckRange, metavar="INT",
        help="Recreate the last INT parent directories of each source snapshot below the destination directory, e.g. "
             "with '--parent-depth 1' the snapshot /snapshots/home/2024-01-01 is received into "
             "DST/home/2024-01-01 (default: %(default)s).\n\n")
    parser.add_argument(
        "--clone", "-c", action="store_true",
        help="Pass all source snapshots that already exist at the destination to 'btrfs send' as '-c' clone sources, "
             "in addition to the seed.\n\n")
    parser.add_argument(
        "--sequential", "-s", action="store_true",
        help="Use the snapshot most recently transferred during this run as the seed for the next transfer, without "
             "looking up parent UUIDs. Useful for long chains of snapshots taken from the same subvolume.\n\n")
    parser.add_argument(
        "--skip-non-incremental", action="store_true",
        help="Skip snapshots for which no seed can be found, instead of making a full transfer.\n\n")
    parser.add_argument(
        "--dryrun", "-n", action="store_true",
        help="Do a dry run (aka 'no-op') to print what operations would happen if the command were to be executed "
             "for real (optional). This option treats both the source and destination as read-only.\n\n")
    parser.add_argument(
        "--verbose", "-v", action="count", default=0,
        help="Print verbose information. This option can be specified multiple times to increase the level of "
             "verbosity. To print what btrfs/ssh operation exactly is happening (or would happen), add the `-v -v` "
             "flag, maybe along with --dryrun. ERROR, WARN, INFO, DEBUG, TRACE output lines are identified by "
             "[E], [W], [I], [D], [T] prefixes, respectively.\n\n")
    parser.add_argument(
        "--debug", action="store_true",
        help="Same as `-v -v`.\n\n")
    parser.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress non-error, info, debug, and trace output.\n\n")
    parser.add_argument(
        "--no-privilege-elevation", action="store_true",
        help="Do not attempt to run btrfs operations as root (via 'sudo -n') when running as a non-root user.\n\n")

    parser.add_argument(
        "--no-retry", action="store_true",
        help="Do not retry a failed transfer; same as --retries=0.\n\n")
    parser.add_argument(
        "--retries", type=int, min=0, default=2, action=CheckRange, metavar="INT",
        help="The maximum number of times a failed transfer shall be retried, for example because of network "
             "hiccups (default: %(default)s). Once retries are exhausted the run fails.\n\n")
    parser.add_argument(
        "--retry-min-sleep-secs", type=float, min=0, default=0.125, action=CheckRange, metavar="FLOAT",
        help="The minimum duration to sleep between retries (default: %(default)s).\n\n")
    parser.add_argument(
        "--retry-max-sleep-secs", type=float, min=0, default=5 * 60, action=CheckRange, metavar="FLOAT",
        help="The maximum duration to sleep between retries initially starts with --retry-min-sleep-secs (see above), "
             "and doubles on each retry, up to the final maximum of --retry-max-sleep-secs "
             "(default: %(default)s). On each retry a random sleep time in the "
             "[--retry-min-sleep-secs, current max] range is picked.\n\n")
    parser.add_argument(
        "--retry-max-elapsed-secs", type=float, min=0, default=None, action=CheckRange, metavar="FLOAT",
        help="A transfer will not be retried (or not retried anymore) once this much time has elapsed since its "
             "first attempt. By default there is no such limit, so a failed transfer is always attempted again until "
             "--retries is exhausted, however long each attempt took.\n\n")

    parser.add_argument(
        "--ssh-src-port", type=int, min=1, max=65535, action=CheckRange, metavar="INT",
        help="Remote port on source host to connect to.\n\n")
    parser.add_argument(
        "--ssh-dst-port", "-p", type=int, min=1, max=65535, action=CheckRange, metavar="INT",
        help="Remote port on destination host to connect to.\n\n")
    parser.add_argument(
        "--ssh-config-file", type=str, action=SSHConfigFileNameAction, metavar="FILE",
        help="Path to ssh_config(5) file to connect to source and destination hosts (optional); will be passed into "
             "ssh -F CLI. The basename must contain the substring 'btrsync_ssh_config'.\n\n")

    def hlp(program: str) -> str:
        return f"The name of the '{program}' executable (optional). Default is '{program}'. "

    msg: str = f"Use '{DISABLE_PRG}' to disable the use of this program.\n\n"
    parser.add_argument(
        "--compression-program", default=DISABLE_PRG, choices=[*COMPRESSION_PROGRAMS, DISABLE_PRG],
        help="The program used to compress the 'btrfs send' stream on the wire (optional). Default is "
             f"'{DISABLE_PRG}' (no compression). The multi-threaded programs 'pbzip2', 'pigz' and 'pzstd' automatically "
             "fall back to 'bzip2', 'gzip' and 'zstd', respectively, if they are unavailable on source or destination "
             "host. Compression is disabled if the chosen program is unavailable on either end.\n\n")
    parser.add_argument(
        "--xz", "-z", dest="compression_program", action="store_const", const="xz",
        help="Same as --compression-program=xz\n\n")
    parser.add_argument(
        "--pbzip2", "-Z", dest="compression_program", action="store_const", const="pbzip2",
        help="Same as --compression-program=pbzip2\n\n")
    parser.add_argument(
        "--compression-program-opts", default="", metavar="STRING",
        help="The options to be passed to the compression program on the compression step (optional).\n\n")
    parser.add_argument(
        "--pv-program", default="pv", choices=["pv", DISABLE_PRG],
        help=hlp("pv") + msg.rstrip() + " This is used for progress monitoring on the local host.\n\n")
    parser.add_argument(
        "--pv-program-opts", metavar="STRING",
        default="--progress --timer --eta --rate --average-rate --bytes --interval=1 --width=120",
        help="The options to be passed to the 'pv' program (optional). Default: '%(default)s'.\n\n")
    parser.add_argument(
        "--ps-program", default="ps", choices=["ps", DISABLE_PRG],
        help=hlp("ps") + msg)
    parser.add_argument(
        "--shell-program", default="sh", choices=["sh", "bash", "dash"],
        help=hlp("sh").rstrip() + "\n\n")
    parser.add_argument(
        "--ssh-program", default="ssh", choices=["ssh", "hpnssh", DISABLE_PRG],
        help=hlp("ssh") + msg)
    parser.add_argument(
        "--sudo-program", default="sudo", choices=["sudo", DISABLE_PRG],
        help=hlp("sudo") + msg)
    parser.add_argument(
        "--lock-file", type=str, action=NonEmptyStringAction, metavar="FILE",
        help=f"Path of the lock file that prevents concurrent runs on this host (optional). Default: "
             f"$TMPDIR/{PROG_NAME}.lock\n\n")
    parser.add_argument(
        "--log-dir", type=str, action=SafeDirectoryNameAction, metavar="DIR",
        help=f"Path to the log output directory on local host (optional). Default: $HOME/{LOG_DIR_DEFAULT}. The logger "
             "writes log files there, in addition to the console. The basename of --log-dir must contain the substring "
             f"'{LOG_DIR_DEFAULT}' as this helps prevent accidents. Environment variables with prefix "
             f"'{ENV_VAR_PREFIX}' are reserved for testing.\n\n")
    parser.add_argument(
        "--version", action="version", version=f"{PROG_NAME}-{__version__}, by {PROG_AUTHOR}",
        help="Display version information and exit.\n\n")
    return parser
    # fmt: on
