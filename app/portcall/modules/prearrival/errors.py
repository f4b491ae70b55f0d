from __future__ import annotations


class PreArrivalError(RuntimeError):
    pass


class DocumentValidationError(PreArrivalError, ValueError):
    """Input rejected before any write or network call."""


class TransitionNotAllowed(PreArrivalError):
    pass


class NoApprovableDocuments(PreArrivalError):
    """
    Nothing qualifies for the package. Callers surface this as a warning,
    never as a failed archive.
    """

    def __init__(self, request_id: str) -> None:
        super().__init__(f"No approved files found for request {request_id}.")
        self.request_id = request_id


class NetworkError(PreArrivalError):
    pass


class RequestConflict(PreArrivalError):
    """Another port call already uses the request id."""
