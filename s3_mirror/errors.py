from __future__ import annotations


class MirrorError(Exception):
    """Base class for gateway errors."""


class OriginUnavailable(MirrorError):
    """The origin could not be reached or answered with a server error."""

    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


class PartTransferFailed(MirrorError):
    """A single part of a multipart mirror could not be transferred."""

    def __init__(self, part_number: int, message: str) -> None:
        super().__init__(f"part {part_number}: {message}")
        self.part_number = part_number


class StoreWriteFailed(MirrorError):
    """A write, completion or abort against the primary store failed."""


class StoreRejected(MirrorError):
    """The primary store refused a read with a client-facing status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedRange(StoreRejected):
    """The requested byte range is malformed or unsatisfiable."""

    def __init__(self, message: str, status_code: int = 416) -> None:
        super().__init__(message, status_code)
