from typing import Iterable, Optional


class LedgerError(Exception):
    pass


class StorageError(LedgerError):
    """The local store could not commit (disk full, corruption, lock timeout)."""


class EntryNotFoundError(LedgerError):
    pass


class ConflictError(LedgerError):
    """
    One or more entries are not in a state that allows the requested transition.

    Raised by the repository guards, e.g. when two sync cycles race for the same
    pending entries. Nothing is written when this is raised.
    """

    def __init__(self, message: str, ids: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.ids = [str(i) for i in (ids or [])]


class NetworkError(LedgerError):
    """Transport failure or timeout talking to the remote authority."""
