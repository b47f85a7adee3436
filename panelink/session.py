"""Session orchestration: connect, navigate, copy and move.

:class:`FileManagerSession` is what a front-end talks to.  Every operation
is queued onto a single :class:`BackgroundWorker`, so listings and batches
never overlap.  Results reach the front-end through callback attributes,
each invoked via the *dispatcher* so a GUI can marshal them onto its own
thread.
"""

from __future__ import annotations

import functools
import logging
import os
import queue
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Iterable

from panelink.config import ConfigManager
from panelink.connection import SSHConnection
from panelink.errors import PaneLinkError
from panelink.listing import fetch_listing, sftp_listing_text
from panelink.materializer import sync_directory
from panelink.mirror import (
    ConnectionDescriptor,
    create_mirror_root,
    is_mirror_path,
    resolve_connection,
    to_mirror_path,
    to_remote_path,
)
from panelink.progress import ProgressChannel, ProgressSnapshot
from panelink.runner import CommandRunner
from panelink.transfer import BatchResult, CollisionPolicy, Operation, TransferEngine
from panelink.utils.path_helpers import normalize_local_path

logger = logging.getLogger(__name__)

Dispatcher = Callable[[Callable[[], None]], None]


def _call_now(fn: Callable[[], None]) -> None:
    fn()


# ---------------------------------------------------------------------------
# BackgroundWorker
# ---------------------------------------------------------------------------


class BackgroundWorker:
    """Single daemon thread that runs submitted jobs one at a time."""

    def __init__(self, name: str = "panelink-worker") -> None:
        self._queue: queue.Queue = queue.Queue()
        self._shutdown_event = threading.Event()
        self._thread = threading.Thread(target=self._worker_loop, name=name, daemon=True)
        self._thread.start()

    def submit(self, fn: Callable[..., Any], *args, **kwargs) -> Future:
        """Queue ``fn(*args, **kwargs)``; returns a Future for its result."""
        if self._shutdown_event.is_set():
            raise RuntimeError("BackgroundWorker has been shut down")
        future: Future = Future()
        self._queue.put((future, fn, args, kwargs))
        return future

    def shutdown(self, wait: bool = True) -> None:
        """Finish queued jobs, then stop the thread."""
        self._shutdown_event.set()
        self._queue.put(None)  # Shutdown sentinel
        if wait:
            self._thread.join()

    def _worker_loop(self) -> None:
        logger.debug("Background worker started")
        while True:
            job = self._queue.get()
            if job is None:
                break
            future, fn, args, kwargs = job
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:
                logger.exception("Background job %s failed", getattr(fn, "__name__", fn))
                future.set_exception(exc)
        logger.debug("Background worker exiting")


# ---------------------------------------------------------------------------
# FileManagerSession
# ---------------------------------------------------------------------------


class FileManagerSession:
    """Front-end facing API over mirrors, listings and transfer batches.

    Callbacks (all optional, all invoked through the dispatcher):

    - ``on_progress(snapshot)`` — throttled batch progress.
    - ``on_batch_complete(result)`` — a batch finished.
    - ``on_pane_refreshed(path)`` — *path* should be re-read from disk.
    - ``on_clear_selection()`` — the selection that started a batch is stale.
    - ``on_error(message)`` — a connect, listing or batch problem to show.
    - ``on_collision(names, operation) -> CollisionPolicy`` — called directly
      on the worker thread, since the engine needs the answer to continue.
    """

    def __init__(
        self,
        config: ConfigManager,
        runner: CommandRunner | None = None,
        dispatcher: Dispatcher | None = None,
        worker: BackgroundWorker | None = None,
    ) -> None:
        self.config = config
        self.runner = runner or CommandRunner.from_config(config)
        self.dispatcher = dispatcher or _call_now
        self.worker = worker or BackgroundWorker()

        self.on_progress: Callable[[ProgressSnapshot], None] | None = None
        self.on_batch_complete: Callable[[BatchResult], None] | None = None
        self.on_pane_refreshed: Callable[[Path], None] | None = None
        self.on_clear_selection: Callable[[], None] | None = None
        self.on_error: Callable[[str], None] | None = None
        self.on_collision: Callable[[list[str], Operation], CollisionPolicy] | None = None

        self.channel = ProgressChannel(self.dispatcher)
        self.channel.subscribe(self._forward_progress)
        self.engine = TransferEngine.from_config(
            config,
            self.runner,
            channel=self.channel,
            on_collision=self._ask_collision,
        )

    # ------------------------------------------------------------------
    # Public API: each returns a Future resolved on the worker thread
    # ------------------------------------------------------------------

    def connect(
        self,
        host: str,
        username: str,
        port: int = 22,
        password: str | None = None,
        path: str | None = None,
    ) -> Future:
        """Verify credentials, record the connection and list its base path.

        The Future resolves to the mirror directory for the base path, or to
        ``None`` if connecting failed (``on_error`` has been called).
        """
        if not password:
            password = self.config.lookup_password(host, username, port)
        descriptor = ConnectionDescriptor(
            host=host,
            username=username,
            port=int(port),
            password=password or None,
            base_path=path or self.config.get("default_remote_path", "/"),
        )
        return self.worker.submit(self._connect, descriptor)

    def navigate(self, path: str | os.PathLike[str]) -> Future:
        """Show *path*; mirror directories are re-listed from the remote first."""
        return self.worker.submit(self._guarded, self._refresh, normalize_local_path(path))

    refresh = navigate

    def copy(self, sources: Iterable[str | os.PathLike[str]], destination_dir: str | os.PathLike[str]) -> Future:
        return self.worker.submit(self._run_batch, list(sources), destination_dir, Operation.COPY)

    def move(self, sources: Iterable[str | os.PathLike[str]], destination_dir: str | os.PathLike[str]) -> Future:
        return self.worker.submit(self._run_batch, list(sources), destination_dir, Operation.MOVE)

    def close(self) -> None:
        self.worker.shutdown()

    # ------------------------------------------------------------------
    # Jobs (worker thread)
    # ------------------------------------------------------------------

    def _connect(self, descriptor: ConnectionDescriptor) -> Path | None:
        timeout = float(self.config.get("connect_timeout", 10))
        try:
            with SSHConnection(descriptor, timeout=timeout):
                pass
            self.config.upsert_connection(
                descriptor.host,
                descriptor.port,
                descriptor.username,
                descriptor.base_path,
                descriptor.password,
            )
            root = create_mirror_root(self.config.cache_dir, descriptor)
            target = to_mirror_path(descriptor.base_path, root)
            target.mkdir(parents=True, exist_ok=True)
            self._refresh(target)
        except (PaneLinkError, OSError, ValueError) as exc:
            logger.error("Connect to %s failed: %s", descriptor.destination, exc)
            self._notify_error(f"Could not connect to {descriptor.destination}: {exc}")
            return None
        return target

    def _guarded(self, job: Callable[..., Any], *args) -> Any:
        try:
            return job(*args)
        except (PaneLinkError, OSError) as exc:
            logger.error("%s", exc)
            self._notify_error(str(exc))
            return None

    def _refresh(self, path: Path) -> Path:
        if is_mirror_path(path):
            self._relist(path)
        self._dispatch(self.on_pane_refreshed, path)
        return path

    def _relist(self, path: Path) -> None:
        """Replace the placeholders of mirror directory *path* with a fresh listing."""
        descriptor, root = resolve_connection(path, self.config)
        remote_path = to_remote_path(path, root, strict=True)
        secondary = functools.partial(
            sftp_listing_text, timeout=float(self.config.get("connect_timeout", 10))
        )
        entries = fetch_listing(descriptor, remote_path, self.runner, secondary=secondary)
        sync_directory(path, entries)

    def _run_batch(
        self,
        sources: list[str | os.PathLike[str]],
        destination_dir: str | os.PathLike[str],
        operation: Operation,
    ) -> BatchResult:
        result = self.engine.run(sources, destination_dir, operation)
        self._dispatch(self.on_clear_selection)

        affected: list[Path] = [normalize_local_path(destination_dir)]
        if operation is Operation.MOVE:
            for source in sources:
                parent = normalize_local_path(source).parent
                if parent not in affected:
                    affected.append(parent)

        for directory in affected:
            if not is_mirror_path(directory):
                continue
            try:
                self._relist(directory)
            except (PaneLinkError, OSError) as exc:
                logger.warning("Re-listing %s after %s failed: %s", directory, operation.value, exc)
                self._notify_error(str(exc))

        if not result.ok:
            self._notify_error(result.summary)
        self._dispatch(self.on_batch_complete, result)
        for directory in affected:
            self._dispatch(self.on_pane_refreshed, directory)
        return result

    # ------------------------------------------------------------------
    # Callback plumbing
    # ------------------------------------------------------------------

    def _ask_collision(self, names: list[str], operation: Operation) -> CollisionPolicy:
        if self.on_collision is None:
            return CollisionPolicy.OVERWRITE_ALL
        return self.on_collision(names, operation)

    def _forward_progress(self, snapshot: ProgressSnapshot) -> None:
        if self.on_progress:
            self.on_progress(snapshot)

    def _notify_error(self, message: str) -> None:
        self._dispatch(self.on_error, message)

    def _dispatch(self, callback: Callable[..., None] | None, *args) -> None:
        if callback is None:
            return

        def _invoke() -> None:
            try:
                callback(*args)
            except Exception:
                logger.exception("Exception in %s callback", getattr(callback, "__name__", "session"))

        self.dispatcher(_invoke)
