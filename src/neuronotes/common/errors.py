from __future__ import annotations

from typing import Optional, Sequence


class NeuroNotesError(Exception):
    kind = "error"


class DecodeError(NeuroNotesError):
    """Terminal failure of a single decode call.

    `sequence` is a snapshot of the working token sequence as it stood before
    the failing step, or None when the failure happened before decoding began.
    """

    kind = "decode_error"

    def __init__(self, message: str, *, sequence: Optional[Sequence[int]] = None):
        super().__init__(message)
        self.sequence = list(sequence) if sequence is not None else None


class InvalidPrompt(DecodeError):
    kind = "invalid_prompt"


class EndpointUnavailable(DecodeError):
    kind = "endpoint_unavailable"


class ShapeMismatch(DecodeError):
    kind = "shape_mismatch"


class EndpointTimeout(DecodeError):
    kind = "endpoint_timeout"


class QueueFull(NeuroNotesError):
    kind = "queue_full"


class SessionStoreError(NeuroNotesError):
    kind = "session_store_error"


class DuplicateSession(SessionStoreError):
    kind = "duplicate_session"
