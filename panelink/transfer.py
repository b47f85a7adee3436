"""Batch transfer engine for PaneLink.

Copies or moves a selection of entries into one destination directory.
Each item is classified by where its source and destination live (local
disk or a remote mirror) and whether it is a directory, giving eight
operations:

- local → local     file / directory   chunked copy on disk
- local → remote    file / directory   rsync upload
- remote → local    file / directory   rsync download
- remote → remote   file / directory   download to a relay dir, then upload

Items run strictly one after another.  A failing item is recorded and the
batch carries on.  A move deletes its source only after the copy succeeded.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Iterable

from panelink.errors import PaneLinkError, PartialBatchError, PathResolutionError
from panelink.materializer import size_of
from panelink.mirror import (
    ConnectionDescriptor,
    PasswordLookup,
    is_mirror_path,
    resolve_connection,
    to_remote_path,
)
from panelink.progress import (
    DEFAULT_FALLBACK_SPEED,
    DEFAULT_PROGRESS_INTERVAL,
    ProgressAggregator,
    ProgressChannel,
)
from panelink.runner import CommandRunner, TransferDirection
from panelink.utils.path_helpers import human_readable_size, is_within, normalize_local_path, posix_join

logger = logging.getLogger(__name__)

DEFAULT_COPY_BUFFER_SIZE = 1024 * 1024

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Operation(Enum):
    """Kind of batch."""

    COPY = "copy"
    MOVE = "move"


class CollisionPolicy(Enum):
    """Answer to "some destination names already exist"."""

    OVERWRITE_ALL = auto()
    SKIP_ALL = auto()
    CANCEL = auto()


class ItemState(Enum):
    """Lifecycle state of a TransferItem."""

    PENDING = auto()
    COLLISION_CHECK = auto()
    SKIPPED = auto()
    OVERWRITING = auto()
    IN_FLIGHT = auto()
    SUCCEEDED = auto()
    PENDING_DELETION = auto()
    DELETED = auto()
    FAILED = auto()
    DELETE_FAILED = auto()


TERMINAL_STATES = frozenset(
    {
        ItemState.SKIPPED,
        ItemState.SUCCEEDED,
        ItemState.DELETED,
        ItemState.FAILED,
        ItemState.DELETE_FAILED,
    }
)
_SUCCESS_STATES = frozenset({ItemState.SUCCEEDED, ItemState.DELETED, ItemState.DELETE_FAILED})

CollisionCallback = Callable[[list[str], Operation], CollisionPolicy]
ByteCallback = Callable[[int, float], None]

# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class TransferItem:
    """One source entry of a batch and everything learned about it."""

    source: Path
    dest: Path
    is_dir: bool
    src_remote: bool
    dst_remote: bool
    estimate: int = 0
    state: ItemState = ItemState.PENDING
    error: str | None = None
    history: list[ItemState] = field(default_factory=list)
    src_conn: ConnectionDescriptor | None = None
    src_path: str = ""
    dst_conn: ConnectionDescriptor | None = None
    dst_path: str = ""

    @property
    def name(self) -> str:
        return self.source.name

    @property
    def kind(self) -> tuple[bool, bool, bool]:
        """``(src_remote, dst_remote, is_dir)``, the dispatch key."""
        return (self.src_remote, self.dst_remote, self.is_dir)

    @property
    def succeeded(self) -> bool:
        return self.state in _SUCCESS_STATES

    def advance(self, state: ItemState, error: str | None = None) -> None:
        self.history.append(self.state)
        self.state = state
        if error is not None:
            self.error = error
        logger.debug("%s → %s%s", self.name, state.name, f" ({error})" if error else "")


@dataclass
class TransferBatch:
    """One copy or move of N sources into one destination directory."""

    operation: Operation
    destination_dir: Path
    items: list[TransferItem]

    @property
    def total_bytes(self) -> int:
        return sum(item.estimate for item in self.items)


@dataclass
class BatchResult:
    """Outcome of :meth:`TransferEngine.run`."""

    operation: Operation
    items: list[TransferItem]
    total_bytes: int
    completed_bytes: int
    cancelled: bool = False

    def _in(self, *states: ItemState) -> list[TransferItem]:
        return [item for item in self.items if item.state in states]

    @property
    def succeeded(self) -> list[TransferItem]:
        return [item for item in self.items if item.succeeded]

    @property
    def failed(self) -> list[TransferItem]:
        return self._in(ItemState.FAILED)

    @property
    def skipped(self) -> list[TransferItem]:
        return self._in(ItemState.SKIPPED)

    @property
    def delete_failed(self) -> list[TransferItem]:
        return self._in(ItemState.DELETE_FAILED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.delete_failed

    @property
    def summary(self) -> str:
        """One-line human summary of the batch."""
        if self.cancelled:
            return f"{self.operation.value.title()} cancelled"
        verb = "Moved" if self.operation is Operation.MOVE else "Copied"
        parts = [
            f"{verb} {len(self.succeeded)} of {len(self.items)} item(s)"
            f" ({human_readable_size(self.completed_bytes)})"
        ]
        if self.skipped:
            parts.append(f"{len(self.skipped)} skipped")
        if self.failed:
            parts.append(f"{len(self.failed)} failed")
        if self.delete_failed:
            parts.append(f"{len(self.delete_failed)} copied but original not deleted")
        return ", ".join(parts)

    def raise_for_errors(self) -> None:
        """Raise :class:`PartialBatchError` if any item failed or kept its source."""
        problems = self.failed + self.delete_failed
        if problems:
            raise PartialBatchError(problems, len(self.items))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _remove_local(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _directory_size(path: Path) -> int:
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for filename in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, filename)).st_size
            except OSError:
                pass
    return total


# ---------------------------------------------------------------------------
# TransferEngine
# ---------------------------------------------------------------------------


class TransferEngine:
    """Plans and executes copy/move batches.

    The engine itself is synchronous: :meth:`run` blocks until the whole
    batch is done, so callers run it on a worker thread.
    """

    def __init__(
        self,
        runner: CommandRunner,
        history: PasswordLookup | None = None,
        channel: ProgressChannel | None = None,
        on_collision: CollisionCallback | None = None,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        fallback_speed: float = DEFAULT_FALLBACK_SPEED,
        copy_buffer_size: int = DEFAULT_COPY_BUFFER_SIZE,
    ) -> None:
        """Initialise the engine.

        Args:
            runner: Executes remote commands and rsync legs.
            history: Recovers passwords for mirror roots whose sidecar has none.
            channel: Receives progress snapshots.
            on_collision: Asked once per batch when destination names exist.
                If None, existing entries are overwritten.
            progress_interval: Minimum seconds between routine snapshots.
            fallback_speed: Speed (bytes/s) shown before the first report.
            copy_buffer_size: Chunk size for local copies.
        """
        self.runner = runner
        self.history = history
        self.channel = channel
        self.on_collision = on_collision
        self.progress_interval = progress_interval
        self.fallback_speed = fallback_speed
        self.copy_buffer_size = copy_buffer_size

        self._dispatch = {
            (False, False, False): self._copy_local_file,
            (False, False, True): self._copy_local_directory,
            (False, True, False): self._upload,
            (False, True, True): self._upload,
            (True, False, False): self._download,
            (True, False, True): self._download,
            (True, True, False): self._relay,
            (True, True, True): self._relay,
        }

    @classmethod
    def from_config(cls, config, runner: CommandRunner, **kwargs) -> "TransferEngine":
        """Build an engine using the tuning values of a ``ConfigManager``."""
        return cls(
            runner,
            history=config,
            progress_interval=float(config.get("progress_interval", DEFAULT_PROGRESS_INTERVAL)),
            fallback_speed=float(config.get("fallback_speed", DEFAULT_FALLBACK_SPEED)),
            copy_buffer_size=int(config.get("copy_buffer_size", DEFAULT_COPY_BUFFER_SIZE)),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan(
        self,
        sources: Iterable[str | os.PathLike[str]],
        destination_dir: str | os.PathLike[str],
        operation: Operation,
    ) -> TransferBatch:
        """Classify every source and estimate its size."""
        dest_dir = normalize_local_path(destination_dir)
        dst_remote = is_mirror_path(dest_dir)
        connections: dict[Path, ConnectionDescriptor] = {}

        items = []
        for source in sources:
            src = normalize_local_path(source)
            item = TransferItem(
                source=src,
                dest=dest_dir / src.name,
                is_dir=src.is_dir(),
                src_remote=is_mirror_path(src),
                dst_remote=dst_remote,
            )
            try:
                if item.src_remote:
                    item.src_conn, item.src_path = self._remote_endpoint(src, connections)
                if item.dst_remote:
                    item.dst_conn, dst_dir_path = self._remote_endpoint(dest_dir, connections)
                    item.dst_path = posix_join(dst_dir_path, src.name)
            except (PathResolutionError, OSError) as exc:
                item.error = str(exc)
                logger.warning("Cannot resolve %s: %s", src, exc)
            else:
                item.estimate = self._estimate(item)
            items.append(item)

        batch = TransferBatch(operation=operation, destination_dir=dest_dir, items=items)
        logger.info(
            "Planned %s of %d item(s) into %s (%s)",
            operation.value, len(items), dest_dir, human_readable_size(batch.total_bytes),
        )
        return batch

    def run(
        self,
        sources: Iterable[str | os.PathLike[str]],
        destination_dir: str | os.PathLike[str],
        operation: Operation = Operation.COPY,
    ) -> BatchResult:
        """Plan and execute one batch; never raises for per-item failures."""
        return self.execute(self.plan(sources, destination_dir, operation))

    def execute(self, batch: TransferBatch) -> BatchResult:
        """Execute a planned batch item by item."""
        aggregator = ProgressAggregator(
            batch.total_bytes,
            batch.operation.value,
            total_items=len(batch.items),
            channel=self.channel,
            interval=self.progress_interval,
            fallback_speed=self.fallback_speed,
        )

        collisions = [
            item.name
            for item in batch.items
            if item.error is None and item.source != item.dest and item.dest.exists()
        ]
        policy = self._ask_collision(collisions, batch.operation)
        if policy is CollisionPolicy.CANCEL:
            for item in batch.items:
                item.advance(ItemState.SKIPPED)
            logger.info("%s cancelled at collision prompt", batch.operation.value.title())
            aggregator.finish()
            return BatchResult(batch.operation, batch.items, batch.total_bytes, 0, cancelled=True)

        for index, item in enumerate(batch.items, start=1):
            self._process_item(item, index, batch.operation, policy, set(collisions), aggregator)

        aggregator.finish()
        result = BatchResult(
            batch.operation, batch.items, batch.total_bytes, aggregator.completed_bytes
        )
        logger.info("%s", result.summary)
        return result

    # ------------------------------------------------------------------
    # Planning helpers
    # ------------------------------------------------------------------

    def _remote_endpoint(
        self, path: Path, cache: dict[Path, ConnectionDescriptor]
    ) -> tuple[ConnectionDescriptor, str]:
        descriptor, root = resolve_connection(path, self.history)
        descriptor = cache.setdefault(root, descriptor)
        return descriptor, to_remote_path(path, root, strict=True)

    def _estimate(self, item: TransferItem) -> int:
        if not item.src_remote:
            if item.is_dir:
                return _directory_size(item.source)
            try:
                return item.source.stat().st_size
            except OSError:
                return 0
        if item.is_dir:
            return self.runner.remote_directory_size(item.src_conn, item.src_path)
        return self.runner.remote_size(item.src_conn, item.src_path) or size_of(item.source)

    def _ask_collision(self, names: list[str], operation: Operation) -> CollisionPolicy:
        if not names:
            return CollisionPolicy.OVERWRITE_ALL
        if self.on_collision is None:
            logger.info("%d existing destination(s) will be overwritten", len(names))
            return CollisionPolicy.OVERWRITE_ALL
        policy = self.on_collision(names, operation)
        if policy is CollisionPolicy.CANCEL and operation is not Operation.MOVE:
            logger.debug("Cancel is only offered for moves; skipping collisions instead")
            return CollisionPolicy.SKIP_ALL
        return policy

    # ------------------------------------------------------------------
    # Item processing
    # ------------------------------------------------------------------

    def _process_item(
        self,
        item: TransferItem,
        index: int,
        operation: Operation,
        policy: CollisionPolicy,
        collisions: set[str],
        aggregator: ProgressAggregator,
    ) -> None:
        if item.error is not None:
            item.advance(ItemState.FAILED)
            return
        if item.source == item.dest or (item.is_dir and is_within(item.dest, item.source)):
            item.advance(ItemState.FAILED, "source and destination are the same location")
            logger.warning("Refusing to %s %s onto itself", operation.value, item.source)
            return

        item.advance(ItemState.COLLISION_CHECK)
        if item.name in collisions:
            if policy is CollisionPolicy.SKIP_ALL:
                item.advance(ItemState.SKIPPED)
                logger.info("Skipped existing %s", item.dest)
                return
            item.advance(ItemState.OVERWRITING)
            try:
                self._remove_existing(item)
            except (OSError, PaneLinkError) as exc:
                item.advance(ItemState.FAILED, f"could not replace existing entry: {exc}")
                logger.error("Could not replace %s: %s", item.dest, exc)
                return

        item.advance(ItemState.IN_FLIGHT)
        aggregator.start_item(item.name, index, item.estimate)
        try:
            self._dispatch[item.kind](item, aggregator.update)
        except (OSError, PaneLinkError) as exc:
            item.advance(ItemState.FAILED, str(exc))
            aggregator.finish_item(succeeded=False)
            logger.error("%s failed for %s: %s", operation.value.title(), item.source, exc)
            return

        item.advance(ItemState.SUCCEEDED)
        aggregator.finish_item(succeeded=True)

        if operation is Operation.MOVE:
            self._delete_source(item)

    def _remove_existing(self, item: TransferItem) -> None:
        if item.dst_remote:
            existing_is_dir = item.dest.is_dir()
            if not self.runner.delete_remote(item.dst_conn, item.dst_path, existing_is_dir):
                raise PaneLinkError(f"remote delete of {item.dst_path} failed")
        _remove_local(item.dest)

    def _delete_source(self, item: TransferItem) -> None:
        item.advance(ItemState.PENDING_DELETION)
        if item.src_remote:
            deleted = self.runner.delete_remote(item.src_conn, item.src_path, item.is_dir)
        else:
            try:
                _remove_local(item.source)
                deleted = True
            except OSError as exc:
                logger.warning("Could not delete %s: %s", item.source, exc)
                deleted = False

        if deleted:
            item.advance(ItemState.DELETED)
        else:
            item.advance(ItemState.DELETE_FAILED, "copied, but the original could not be deleted")
            logger.error("Moved %s but the original was kept", item.source)

    # ------------------------------------------------------------------
    # The eight operations
    # ------------------------------------------------------------------

    def _copy_local_file(self, item: TransferItem, on_bytes: ByteCallback) -> None:
        item.dest.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        self._copy_file(item.source, item.dest, 0, started, on_bytes)
        logger.info("Local copy complete: %s → %s", item.source, item.dest)

    def _copy_local_directory(self, item: TransferItem, on_bytes: ByteCallback) -> None:
        """Copy a tree with ``shutil.copytree``; symlinks are recreated as links."""
        started = time.monotonic()
        done = 0

        def _copy_one(src: str, dst: str) -> str:
            nonlocal done
            done = self._copy_file(Path(src), Path(dst), done, started, on_bytes)
            return dst

        item.dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(
            item.source, item.dest, symlinks=True, copy_function=_copy_one, dirs_exist_ok=True
        )
        logger.info("Local directory copy complete: %s → %s", item.source, item.dest)

    def _copy_file(
        self, src: Path, dst: Path, offset: int, started: float, on_bytes: ByteCallback
    ) -> int:
        """Copy one file in chunks, reporting ``offset + copied``; returns the new offset."""
        copied = offset
        with open(src, "rb") as src_fh, open(dst, "wb") as dst_fh:
            while True:
                chunk = src_fh.read(self.copy_buffer_size)
                if not chunk:
                    break
                dst_fh.write(chunk)
                copied += len(chunk)
                elapsed = time.monotonic() - started
                on_bytes(copied, copied / elapsed if elapsed > 0 else 0.0)
        shutil.copystat(src, dst)
        return copied

    def _upload(self, item: TransferItem, on_bytes: ByteCallback) -> None:
        transfer = self.runner.transfer_directory if item.is_dir else self.runner.transfer_file
        transfer(TransferDirection.UPLOAD, item.dst_conn, str(item.source), item.dst_path, on_bytes)

    def _download(self, item: TransferItem, on_bytes: ByteCallback) -> None:
        item.dest.parent.mkdir(parents=True, exist_ok=True)
        transfer = self.runner.transfer_directory if item.is_dir else self.runner.transfer_file
        transfer(TransferDirection.DOWNLOAD, item.src_conn, str(item.dest), item.src_path, on_bytes)

    def _relay(self, item: TransferItem, on_bytes: ByteCallback) -> None:
        """Download to a relay directory, then upload from it.

        The runner reports the download leg on ``[0, estimate)`` and the
        upload leg on ``[estimate, 2 * estimate)``.  Bytes and speed are
        halved so the item still reports on ``[0, estimate)``.  Each leg
        therefore shows at half its real rate, and a leg whose actual size
        differs from the estimate is only approximated.
        """

        def _halved(transferred: int, speed: float) -> None:
            on_bytes(transferred // 2, speed / 2)

        self.runner.remote_to_remote_transfer(
            item.src_conn,
            item.src_path,
            item.dst_conn,
            item.dst_path,
            item.is_dir,
            item.estimate,
            _halved,
        )
