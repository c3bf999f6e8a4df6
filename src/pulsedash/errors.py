"""Exception types for pulsedash."""

from __future__ import annotations


class PulsedashError(Exception):
    """Base class for every pulsedash error."""


class CollectorError(PulsedashError):
    """A data source could not be read or parsed.

    Always recoverable: the collector keeps its previous snapshot and the
    error is shown on that collector's panel only.
    """

    def __init__(self, source: str, cause: str) -> None:
        super().__init__(f"{source}: {cause}")
        self.source = source
        self.cause = cause


class SignalError(PulsedashError):
    """Delivering a signal to a process failed."""

    def __init__(self, pid: int, kind: str, cause: str) -> None:
        super().__init__(f"{kind} {pid} failed: {cause}")
        self.pid = pid
        self.kind = kind
        self.cause = cause


class FetchError(PulsedashError):
    """Fetching or decoding a remote image failed."""


class StartupError(PulsedashError):
    """The dashboard cannot start. Raised before the event loop runs."""
