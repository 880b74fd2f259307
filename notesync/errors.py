from enum import Enum
from typing import Optional


class Phase(str, Enum):
    ENCRYPT = "encrypt"
    SIGN = "sign"
    TRANSMIT = "transmit"
    DECRYPT = "decrypt"
    VERIFY = "verify"


class NoteSyncError(Exception):
    """Base error; carries the note id and sync phase when known."""

    def __init__(
        self,
        message: str,
        note_id: Optional[str] = None,
        phase: Optional[Phase] = None,
    ):
        super().__init__(message)
        self.message = message
        self.note_id = note_id
        self.phase = phase

    def __str__(self) -> str:
        where = []
        if self.phase is not None:
            where.append(f"phase={self.phase.value}")
        if self.note_id is not None:
            where.append(f"note={self.note_id}")
        if not where:
            return self.message
        return f"{self.message} ({', '.join(where)})"


class KeyUnavailable(NoteSyncError):
    """Post-quantum backend or key material missing; classical-only mode."""


class EncryptionFailure(NoteSyncError):
    pass


class DecryptionFailure(NoteSyncError):
    """Authentication tag mismatch or malformed framing."""


class SignatureVerificationFailure(NoteSyncError):
    pass


class TransportFailure(NoteSyncError):
    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None):
        super().__init__(message, phase=Phase.TRANSMIT)
        self.retryable = retryable
        self.status_code = status_code


class RateLimited(TransportFailure):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, retryable=True, status_code=429)
        self.retry_after = retry_after


class VersionRejected(TransportFailure):
    def __init__(self, message: str):
        super().__init__(message, retryable=False, status_code=426)
