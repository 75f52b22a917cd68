"""
Error taxonomy for a call session.

None of these are fatal to the process; every failure is scoped to the
session that raised it.
"""

from typing import Optional


class IntakeError(Exception):
    """Base class for session-scoped failures."""
    pass


class TransportUnavailable(IntakeError):
    """Raised when audio delivery is attempted on a closed media transport."""

    def __init__(self, label: Optional[str] = None):
        self.label = label
        super().__init__(f"Media transport is not open (label={label})")


class SynthesisFailure(IntakeError):
    """
    Speech synthesis produced no usable audio.

    Covers both provider errors and a successful response with an empty body.
    """

    def __init__(self, message: str, *, index: Optional[int] = None, label: Optional[str] = None):
        self.index = index
        self.label = label
        super().__init__(message)


class SynthesisError(SynthesisFailure):
    """The synthesis provider returned an error or could not be reached."""
    pass


class RecognitionStreamFailure(IntakeError):
    """The speech-to-text stream dropped and could not be re-established."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Recognition stream failed after {attempts} reconnect attempts")
