"""Remote command and rsync transfer runner for PaneLink.

Every remote interaction goes through an ``ssh`` or ``rsync`` subprocess.
Passwords are handed over through a one-shot ``SSH_ASKPASS`` script that is
created ``0700``, deletes itself when run, and is unlinked again by the
runner whatever the outcome — the secret never appears in an argument list
and no pseudo-terminal is needed.

Host keys are accepted without being persisted (``StrictHostKeyChecking=no``,
``UserKnownHostsFile=/dev/null``).  This is a known security trade-off: the
remote host is not authenticated.

rsync progress is parsed from lines such as::

    1,048,576  10%    5.12MB/s    0:00:18
    10,485,760 100%   50.00MB/s    0:00:00 (xfr#1, to-chk=0/1)

and forwarded as ``(bytes_transferred, bytes_per_second)``.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
import shlex
import shutil
import subprocess
import tempfile
import threading
import time
from contextlib import contextmanager
from enum import Enum, auto
from typing import Callable, Iterator, NamedTuple

from panelink.errors import TransferError
from panelink.mirror import ConnectionDescriptor
from panelink.utils.path_helpers import shell_quote, validate_remote_path

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, float], None]

PROGRESS_FALLBACK_INTERVAL = 1.0  # seconds between re-emits while rsync is silent
_READ_SIZE = 4096
_OUTPUT_TAIL_LINES = 20
_STATUS_SPAWN_FAILED = 127
_STATUS_TIMEOUT = 124

_PROGRESS_RE = re.compile(
    r"^\s*(?P<bytes>\d[\d,.]*)\s+\d+%\s+(?P<speed>\d[\d.,]*)(?P<unit>[kKMGT]?i?B)/s"
)
_SPEED_UNITS = {
    "B": 1,
    "kB": 1024,
    "KB": 1024,
    "KiB": 1024,
    "MB": 1024 ** 2,
    "MiB": 1024 ** 2,
    "GB": 1024 ** 3,
    "GiB": 1024 ** 3,
    "TB": 1024 ** 4,
    "TiB": 1024 ** 4,
}


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class TransferDirection(Enum):
    """Direction of one transfer leg."""

    UPLOAD = auto()
    DOWNLOAD = auto()


class CommandResult(NamedTuple):
    """Outcome of a remote command."""

    output: str
    status: int
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == 0


class ProgressLine(NamedTuple):
    bytes_transferred: int
    speed: float
    file_done: bool


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_speed(value: str, unit: str) -> float:
    """Convert an rsync speed such as ``("5.12", "MB")`` to bytes per second."""
    number = float(value.replace(",", "."))
    return number * _SPEED_UNITS.get(unit, 1)


def parse_progress_line(line: str) -> ProgressLine | None:
    """Parse one rsync ``--progress`` line; ``None`` if it is not one."""
    match = _PROGRESS_RE.match(line)
    if not match:
        return None
    digits = re.sub(r"\D", "", match.group("bytes"))
    if not digits:
        return None
    try:
        speed = parse_speed(match.group("speed"), match.group("unit"))
    except ValueError:
        speed = 0.0
    return ProgressLine(int(digits), speed, "xfr#" in line or "xfer#" in line)


# ---------------------------------------------------------------------------
# Streaming progress
# ---------------------------------------------------------------------------


class _ProgressPump:
    """Consumes a subprocess stdout stream and forwards rsync progress.

    A reader thread handles data as it becomes readable; a fallback timer
    re-emits the last known values once a second so listeners never stall
    while rsync is quiet.  :meth:`stop` releases both.
    """

    def __init__(
        self,
        stream,
        on_progress: ProgressCallback | None,
        accumulate: bool = False,
        interval: float = PROGRESS_FALLBACK_INTERVAL,
    ) -> None:
        self._stream = stream
        self._on_progress = on_progress
        self._accumulate = accumulate
        self._interval = interval

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._finished_bytes = 0
        self._current_bytes = 0
        self._last: tuple[int, float] | None = None
        self._last_emit = 0.0
        self._tail: list[str] = []

        self._reader = threading.Thread(target=self._read_loop, name="rsync-reader", daemon=True)
        self._timer = threading.Thread(target=self._timer_loop, name="rsync-timer", daemon=True)

    @property
    def output_tail(self) -> str:
        """The last non-progress lines of output (for error messages)."""
        with self._lock:
            return "\n".join(self._tail)

    def start(self) -> None:
        self._reader.start()
        self._timer.start()

    def stop(self) -> None:
        """Stop the timer and wait for the reader to drain the stream."""
        self._stop_event.set()
        self._timer.join()
        self._reader.join(timeout=5)

    def _read_loop(self) -> None:
        buffer = ""
        while True:
            try:
                chunk = self._stream.read(_READ_SIZE)
            except (OSError, ValueError):
                break
            if not chunk:
                break
            buffer += chunk.decode("utf-8", errors="replace")
            parts = re.split(r"[\r\n]", buffer)
            buffer = parts.pop()
            for line in parts:
                self._handle_line(line)
        if buffer:
            self._handle_line(buffer)

    def _handle_line(self, line: str) -> None:
        if not line.strip():
            return
        parsed = parse_progress_line(line)
        if parsed is None:
            with self._lock:
                self._tail.append(line.strip())
                del self._tail[:-_OUTPUT_TAIL_LINES]
            return

        with self._lock:
            if self._accumulate:
                # A smaller count than before means rsync moved on to the next file.
                if parsed.bytes_transferred < self._current_bytes:
                    self._finished_bytes += self._current_bytes
                self._current_bytes = parsed.bytes_transferred
                total = self._finished_bytes + self._current_bytes
                if parsed.file_done:
                    self._finished_bytes += self._current_bytes
                    self._current_bytes = 0
            else:
                total = parsed.bytes_transferred
            self._last = (total, parsed.speed)
            self._emit_locked()

    def _timer_loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            with self._lock:
                if self._last is None:
                    continue
                if time.monotonic() - self._last_emit >= self._interval:
                    self._emit_locked()

    def _emit_locked(self) -> None:
        self._last_emit = time.monotonic()
        if self._on_progress is None or self._last is None:
            return
        try:
            self._on_progress(*self._last)
        except Exception:
            logger.exception("Exception in on_progress callback")


# ---------------------------------------------------------------------------
# CommandRunner
# ---------------------------------------------------------------------------


class CommandRunner:
    """Runs remote commands and rsync legs for a connection descriptor.

    Holds configuration only; every call is independent, so one instance can
    be shared.  Calls block until the subprocess exits.
    """

    def __init__(
        self,
        ssh_binary: str = "ssh",
        rsync_binary: str = "rsync",
        connect_timeout: int = 10,
        command_timeout: float | None = 30,
    ) -> None:
        self.ssh_binary = ssh_binary
        self.rsync_binary = rsync_binary
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    @classmethod
    def from_config(cls, config) -> "CommandRunner":
        """Build a runner from a ``ConfigManager``."""
        return cls(
            ssh_binary=config.get("ssh_binary", "ssh"),
            rsync_binary=config.get("rsync_binary", "rsync"),
            connect_timeout=int(config.get("connect_timeout", 10)),
            command_timeout=config.get("listing_timeout", 30),
        )

    # ------------------------------------------------------------------
    # Credential + option plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _askpass_env(self, password: str | None) -> Iterator[dict[str, str]]:
        """Yield a subprocess environment that answers ssh's password prompt."""
        env = dict(os.environ)
        if not password:
            yield env
            return

        fd, script = tempfile.mkstemp(prefix="panelink-askpass-", suffix=".sh")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write("#!/bin/sh\n")
                fh.write('rm -f -- "$0"\n')
                fh.write(f"printf '%s\\n' {shlex.quote(password)}\n")
            os.chmod(script, 0o700)
            env["SSH_ASKPASS"] = script
            env["SSH_ASKPASS_REQUIRE"] = "force"
            env.setdefault("DISPLAY", ":0")
            yield env
        finally:
            try:
                os.unlink(script)
            except FileNotFoundError:
                pass

    def _ssh_options(self, conn: ConnectionDescriptor) -> list[str]:
        opts = [
            "-p", str(conn.port),
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "LogLevel=ERROR",
        ]
        if conn.password:
            opts += ["-o", "NumberOfPasswordPrompts=1"]
        else:
            opts += ["-o", "BatchMode=yes"]
        return opts

    def _rsync_base(self, conn: ConnectionDescriptor, recursive: bool) -> list[str]:
        ssh_cmd = " ".join(shlex.quote(part) for part in [self.ssh_binary, *self._ssh_options(conn)])
        cmd = [self.rsync_binary, "--progress", "--protect-args", "--times", "-e", ssh_cmd]
        if recursive:
            cmd += ["--recursive", "--links"]
        return cmd

    # ------------------------------------------------------------------
    # Remote commands
    # ------------------------------------------------------------------

    def run_remote(
        self,
        conn: ConnectionDescriptor,
        command: str,
        timeout: float | None = None,
    ) -> CommandResult:
        """Execute *command* on the remote host; never raises for command failure."""
        cmd = [self.ssh_binary, *self._ssh_options(conn), conn.destination, command]
        logger.debug("run_remote %s: %s", conn.destination, command)
        with self._askpass_env(conn.password) as env:
            try:
                proc = subprocess.run(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    capture_output=True,
                    env=env,
                    timeout=timeout if timeout is not None else self.command_timeout,
                )
            except FileNotFoundError as exc:
                logger.error("Cannot start %s: %s", self.ssh_binary, exc)
                return CommandResult("", _STATUS_SPAWN_FAILED, str(exc))
            except subprocess.TimeoutExpired:
                logger.warning("Remote command timed out on %s: %s", conn.destination, command)
                return CommandResult("", _STATUS_TIMEOUT, "timed out")

        output = proc.stdout.decode("utf-8", errors="replace")
        error = proc.stderr.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            logger.debug("Remote command exited %d: %s", proc.returncode, error)
        return CommandResult(output, proc.returncode, error)

    def remote_size(self, conn: ConnectionDescriptor, path: str) -> int:
        """Best-effort byte count of a remote file (0 when unknown)."""
        quoted = shell_quote(path)
        for command in (f"stat -c %s -- {quoted}", f"wc -c < {quoted}"):
            value = self._first_int(self.run_remote(conn, command))
            if value is not None:
                return value
        return 0

    def remote_directory_size(self, conn: ConnectionDescriptor, path: str) -> int:
        """Best-effort recursive byte count of a remote directory (0 when unknown)."""
        quoted = shell_quote(path)
        value = self._first_int(self.run_remote(conn, f"du -sb -- {quoted}"))
        if value is not None:
            return value
        value = self._first_int(self.run_remote(conn, f"du -sk -- {quoted}"))
        return value * 1024 if value is not None else 0

    @staticmethod
    def _first_int(result: CommandResult) -> int | None:
        if not result.ok:
            return None
        tokens = result.output.split()
        if not tokens:
            return None
        try:
            return int(tokens[0])
        except ValueError:
            return None

    def delete_remote(self, conn: ConnectionDescriptor, path: str, is_dir: bool) -> bool:
        """Remove *path* on the remote host (recursively for directories)."""
        if path.strip() in ("", "/") or not validate_remote_path(path):
            logger.error("Refusing to delete remote path %r", path)
            return False
        flag = "-rf" if is_dir else "-f"
        result = self.run_remote(conn, f"rm {flag} -- {shell_quote(path)}")
        if result.ok:
            logger.info("Deleted remote %s", path)
        else:
            logger.warning("Remote delete of %s failed (%d): %s", path, result.status, result.error)
        return result.ok

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def _run_streaming(self, cmd: list[str], password: str | None, on_progress, accumulate: bool) -> None:
        logger.debug("Starting %s", " ".join(shlex.quote(part) for part in cmd))
        with self._askpass_env(password) as env:
            try:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    env=env,
                    bufsize=0,
                )
            except FileNotFoundError as exc:
                raise TransferError(f"Cannot start {cmd[0]}", original_error=exc) from exc

            pump = _ProgressPump(process.stdout, on_progress, accumulate=accumulate)
            pump.start()
            try:
                status = process.wait()
            finally:
                pump.stop()
                if process.stdout:
                    process.stdout.close()

        if status != 0:
            tail = pump.output_tail
            raise TransferError(
                f"{os.path.basename(cmd[0])} exited with code {status}"
                + (f": {tail.splitlines()[-1]}" if tail else ""),
                returncode=status,
                output=tail,
            )

    def _endpoints(
        self,
        direction: TransferDirection,
        conn: ConnectionDescriptor,
        local: str,
        remote: str,
        trailing: bool,
    ) -> tuple[str, str]:
        if not validate_remote_path(remote):
            raise TransferError(f"Invalid remote path: {remote!r}")
        suffix = "/" if trailing else ""
        local_spec = local.rstrip(os.sep) + suffix if trailing else local
        remote_spec = f"{conn.destination}:{remote.rstrip('/') + suffix if trailing else remote}"
        if direction is TransferDirection.UPLOAD:
            return local_spec, remote_spec
        return remote_spec, local_spec

    def transfer_file(
        self,
        direction: TransferDirection,
        conn: ConnectionDescriptor,
        local: str,
        remote: str,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Upload or download one file; each progress line resets the count.

        Raises:
            TransferError: rsync could not start or exited non-zero.
        """
        src, dst = self._endpoints(direction, conn, local, remote, trailing=False)
        cmd = self._rsync_base(conn, recursive=False) + [src, dst]
        self._run_streaming(cmd, conn.password, on_progress, accumulate=False)
        logger.info("%s complete: %s → %s", direction.name.title(), src, dst)

    def transfer_directory(
        self,
        direction: TransferDirection,
        conn: ConnectionDescriptor,
        local: str,
        remote: str,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Upload or download a directory tree; per-file counts accumulate.

        *local* and *remote* both name the directory itself (its contents are
        synchronised into it).

        Raises:
            TransferError: rsync could not start or exited non-zero.
        """
        if direction is TransferDirection.DOWNLOAD:
            os.makedirs(local, exist_ok=True)
        src, dst = self._endpoints(direction, conn, local, remote, trailing=True)
        cmd = self._rsync_base(conn, recursive=True) + [src, dst]
        self._run_streaming(cmd, conn.password, on_progress, accumulate=True)
        logger.info("Directory %s complete: %s → %s", direction.name.lower(), src, dst)

    def remote_to_remote_transfer(
        self,
        src_conn: ConnectionDescriptor,
        src_path: str,
        dst_conn: ConnectionDescriptor,
        dst_path: str,
        is_dir: bool,
        size: int,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Copy between two remote locations by staging through a temp dir.

        The download leg reports on ``[0, size)`` and the upload leg on
        ``[size, 2 * size)``.  The staged copy is removed afterwards, whether
        or not the upload succeeded.
        """
        tmp_dir = tempfile.mkdtemp(prefix="panelink-relay-")
        staged = os.path.join(tmp_dir, posixpath.basename(src_path.rstrip("/")) or "staged")
        transfer = self.transfer_directory if is_dir else self.transfer_file

        def _leg(offset: int) -> ProgressCallback | None:
            if on_progress is None:
                return None
            return lambda transferred, speed: on_progress(offset + transferred, speed)

        try:
            transfer(TransferDirection.DOWNLOAD, src_conn, staged, src_path, _leg(0))
            transfer(TransferDirection.UPLOAD, dst_conn, staged, dst_path, _leg(size))
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            logger.debug("Removed relay directory %s", tmp_dir)
        logger.info(
            "Relay copy complete: %s:%s → %s:%s",
            src_conn.destination, src_path, dst_conn.destination, dst_path,
        )
