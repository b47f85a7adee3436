"""PaneLink — console entry point.

Configures logging, then drives a :class:`FileManagerSession` from the
command line.

Subcommands:
  connect   Verify a remote account and mirror its base path locally.
  ls        List a directory (mirror directories are refreshed first).
  copy      Copy entries into a directory.
  move      Move entries into a directory.
  history   Show or forget saved connections.

Run 'panelink <subcommand> --help' for more details.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from pathlib import Path

from panelink import __version__
from panelink.config import ConfigManager
from panelink.materializer import size_of
from panelink.mirror import RESERVED_NAMES
from panelink.progress import ProgressSnapshot
from panelink.session import FileManagerSession
from panelink.transfer import CollisionPolicy, Operation
from panelink.utils.path_helpers import format_eta, human_readable_size

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

_POLICIES = {
    "overwrite": CollisionPolicy.OVERWRITE_ALL,
    "skip": CollisionPolicy.SKIP_ALL,
    "cancel": CollisionPolicy.CANCEL,
}


def _configure_logging(verbose: bool = False) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Console callbacks
# ---------------------------------------------------------------------------


def _print_progress(snapshot: ProgressSnapshot) -> None:
    line = (
        f"\r[{snapshot.index}/{snapshot.total}] {snapshot.item_name[:40]:<40} "
        f"{snapshot.item_progress * 100:5.1f}%  total {snapshot.progress * 100:5.1f}%  "
        f"{human_readable_size(snapshot.speed)}/s  ETA {format_eta(snapshot.eta)}"
    )
    sys.stdout.write(line)
    if snapshot.completed:
        sys.stdout.write("\n")
    sys.stdout.flush()


def _print_error(message: str) -> None:
    print(f"error: {message}", file=sys.stderr)


def _make_session(args) -> FileManagerSession:
    config = ConfigManager()
    session = FileManagerSession(config)
    session.on_error = _print_error
    session.on_progress = _print_progress
    return session


def _print_listing(directory: Path) -> None:
    children = sorted(
        (child for child in directory.iterdir() if child.name not in RESERVED_NAMES),
        key=lambda child: (not child.is_dir(), child.name.lower()),
    )
    for child in children:
        if child.is_dir():
            print(f"{'<DIR>':>10}  {child.name}/")
        else:
            print(f"{human_readable_size(size_of(child)):>10}  {child.name}")


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_connect(args) -> int:
    """Connect to a remote account and list its base path."""
    password = getpass.getpass(f"Password for {args.user}@{args.host}: ") if args.ask_password else None
    session = _make_session(args)
    try:
        target = session.connect(args.host, args.user, args.port, password, args.path).result()
    finally:
        session.close()
    if target is None:
        return 1
    print(target)
    _print_listing(target)
    return 0


def cmd_ls(args) -> int:
    """List a local or mirror directory."""
    session = _make_session(args)
    try:
        directory = session.navigate(args.path).result()
    finally:
        session.close()
    if directory is None:
        return 1
    _print_listing(directory)
    return 0


def cmd_transfer(args) -> int:
    """Copy or move sources into a destination directory."""
    operation = Operation(args.command)
    session = _make_session(args)
    policy = _POLICIES[args.on_collision]

    def _answer(names: list[str], op: Operation) -> CollisionPolicy:
        print(f"{len(names)} existing item(s): {', '.join(names)} ({args.on_collision})", file=sys.stderr)
        return policy

    session.on_collision = _answer
    submit = session.move if operation is Operation.MOVE else session.copy
    try:
        result = submit(args.sources, args.destination).result()
    finally:
        session.close()

    print(result.summary)
    for item in result.failed + result.delete_failed:
        print(f"  {item.name}: {item.error}", file=sys.stderr)
    return 0 if result.ok else 1


def cmd_history(args) -> int:
    """Show saved connections, or forget one."""
    config = ConfigManager()
    if args.forget:
        user, _, rest = args.forget.partition("@")
        host, _, port = rest.rpartition(":")
        if not host:
            host, port = rest, "22"
        if not config.delete_connection(host, user, int(port)):
            _print_error(f"no saved connection {args.forget}")
            return 1
        return 0
    for entry in config.load_history():
        print(f"{entry['username']}@{entry['host']}:{entry['port']}  {entry.get('path', '/')}")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="panelink",
        description="Browse and transfer files between local disk and SFTP mirrors.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    connect_p = subparsers.add_parser("connect", help="Connect and mirror a remote base path")
    connect_p.add_argument("host", help="Remote hostname or IP")
    connect_p.add_argument("user", help="SSH username")
    connect_p.add_argument("--port", type=int, default=22, metavar="N", help="SSH port (default: 22)")
    connect_p.add_argument("--path", metavar="PATH", help="Remote base path (default: from config)")
    connect_p.add_argument("-p", "--ask-password", action="store_true",
                           help="Prompt for a password instead of using the keyring or keys")

    ls_p = subparsers.add_parser("ls", help="List a directory")
    ls_p.add_argument("path", nargs="?", default=".", help="Directory to list (default: .)")

    for name, verb in (("copy", "Copy"), ("move", "Move")):
        sub = subparsers.add_parser(name, help=f"{verb} entries into a directory")
        sub.add_argument("sources", nargs="+", metavar="SOURCE")
        sub.add_argument("destination", metavar="DEST_DIR")
        sub.add_argument("--on-collision", choices=sorted(_POLICIES), default="overwrite",
                         help="What to do when names already exist (default: overwrite)")

    history_p = subparsers.add_parser("history", help="Show saved connections")
    history_p.add_argument("--forget", metavar="USER@HOST[:PORT]",
                           help="Delete a saved connection and its stored password")
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for PaneLink."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    commands = {
        "connect": cmd_connect,
        "ls": cmd_ls,
        "copy": cmd_transfer,
        "move": cmd_transfer,
        "history": cmd_history,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
