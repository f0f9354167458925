from __future__ import annotations


class ReconcileError(Exception):
    """Outcome of a failed sync pass.

    Every fallible step of a pass raises one of the two variants below so the
    driver loop never has to guess whether a failure is worth retrying.
    """


class PermanentError(ReconcileError):
    """The desired spec is invalid or unsatisfiable as given.

    Retrying without a spec change cannot help, so the pass logs it and
    waits for the next watch event instead of re-queuing.
    """


class TransientError(ReconcileError):
    """Anything retryable: API failures, races, not-yet-populated caches."""


class ConflictError(TransientError):
    """The object's resourceVersion changed since it was read (HTTP 409)."""


class CacheNotSyncedError(TransientError):
    """A cache read was attempted before the informer finished its initial list."""


class NotFoundError(LookupError):
    """The requested object is absent from the cache or the API server."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} {name!r} not found")
        self.kind = kind
        self.name = name


class CacheSyncError(RuntimeError):
    """Informer caches did not sync within the startup window."""
