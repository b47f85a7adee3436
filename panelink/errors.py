"""Exception hierarchy for PaneLink.

Every failure the mirror/transfer subsystem reports is one of these.  None of
them is fatal to the process: the session turns them into a single message
for the UI and carries on.
"""

from __future__ import annotations


class PaneLinkError(Exception):
    """Base exception for all PaneLink errors."""

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


class ConnectionError(PaneLinkError):  # noqa: A001  (shadows built-in intentionally)
    """Host unreachable, authentication failed, or the connect timed out."""

    def __init__(
        self,
        host: str,
        port: int,
        reason: str = "Failed to connect",
        original_error: Exception | None = None,
    ) -> None:
        self.host = host
        self.port = port
        super().__init__(f"{reason} to {host}:{port}", original_error)


class ListingError(PaneLinkError):
    """A remote directory could not be listed by any transport."""

    def __init__(self, remote_path: str, detail: str = "", original_error: Exception | None = None) -> None:
        self.remote_path = remote_path
        message = f"Failed to list remote directory '{remote_path}'"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, original_error)


class TransferError(PaneLinkError):
    """A transfer leg exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        returncode: int | None = None,
        output: str = "",
        original_error: Exception | None = None,
    ) -> None:
        self.returncode = returncode
        self.output = output
        super().__init__(message, original_error)


class PathResolutionError(PaneLinkError):
    """A mirror path has no reachable sidecar, or lies outside its root."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"Cannot resolve '{path}': {reason}")


class PartialBatchError(PaneLinkError):
    """One or more items of a transfer batch failed."""

    def __init__(self, failures: list, total: int) -> None:
        self.failures = failures
        self.total = total
        lines = [f"{record.name}: {record.error}" for record in failures]
        message = f"{len(failures)} of {total} item(s) failed"
        if lines:
            message = message + "\n" + "\n".join(lines)
        super().__init__(message)
