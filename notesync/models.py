from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

ID_HEX_WIDTH = 16

CLASSICAL = 1
POST_QUANTUM = 2


def note_id_to_hex(note_id: int) -> str:
    if note_id < 0:
        raise ValueError("note id must be non-negative")
    return format(note_id, "x").zfill(ID_HEX_WIDTH)


def note_id_from_hex(value: str) -> int:
    return int(value, 16)


# ---------- Notes (plaintext, local only) ----------
class Note(BaseModel):
    id: Optional[int] = None  # monotonic ms timestamp assigned at creation
    title: str = ""
    content: str = ""
    created_at: int = 0
    updated_at: int = 0
    deleted: bool = False  # tombstone
    pending_sync: bool = False  # local write not yet acknowledged
    encryptionType: int = CLASSICAL


# ---------- Envelopes (wire / server form) ----------
class EnvelopeBase(BaseModel):
    id: str = Field(..., description="16-char lowercase hex note id")
    data: str  # base64 ciphertext
    nonce: str  # base64 nonce
    timestamp: int  # echoes Note.updated_at
    signature: str  # base64
    signatureVersion: int
    deleted: bool = False

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if len(v) != ID_HEX_WIDTH or any(c not in "0123456789abcdef" for c in v):
            raise ValueError(f"id must be {ID_HEX_WIDTH} lowercase hex chars")
        return v

    def signable_fields(self) -> dict:
        return self.model_dump(exclude={"signature"})


class ClassicalEnvelope(EnvelopeBase):
    version: Literal[1] = 1


class PostQuantumEnvelope(EnvelopeBase):
    version: Literal[2] = 2


EncryptedEnvelope = Annotated[
    Union[ClassicalEnvelope, PostQuantumEnvelope], Field(discriminator="version")
]

envelope_adapter = TypeAdapter(EncryptedEnvelope)


def make_envelope(version: int, **fields) -> Union[ClassicalEnvelope, PostQuantumEnvelope]:
    return envelope_adapter.validate_python({"version": version, **fields})


# ---------- Sync protocol ----------
class SyncRequest(BaseModel):
    public_key: str  # owner id
    notes: List[EncryptedEnvelope] = Field(default_factory=list)
    client_version: str
    pq_public_key: Optional[str] = None  # base64 ML-KEM encapsulation key


class SyncResponse(BaseModel):
    notes: List[EncryptedEnvelope] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    conflicts: List[str] = Field(default_factory=list)


class HealthStatus(BaseModel):
    status: str
    database: str
    version: str
    timestamp: str

    @property
    def healthy(self) -> bool:
        return self.status == "healthy" and self.database == "connected"


class RawSyncResponse(BaseModel):
    """Client-side view; envelopes are validated one at a time."""

    notes: List[Dict[str, Any]] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    conflicts: List[str] = Field(default_factory=list)
