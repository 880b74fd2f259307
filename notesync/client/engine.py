"""
Hybrid encryption of note bodies.

Classical (version 1):
    AES-256-GCM(key=bundle.encryption_key, nonce=random 12 bytes)

Post-quantum (version 2), self-encryption to the bundle's own ML-KEM key:
    shared_secret, kem_ct = ML-KEM.Encaps(ek)
    aead_ct = AES-256-GCM(key=shared_secret, nonce=random 12 bytes)
    data = u32le(len(kem_ct)) || kem_ct || aead_ct

Associated data binds every ciphertext to its envelope id and version.
"""

import base64
import binascii
import json
import logging
import os
import struct
from dataclasses import dataclass
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import DecryptionFailure, EncryptionFailure, KeyUnavailable, Phase
from ..models import CLASSICAL, POST_QUANTUM, Note, note_id_from_hex, note_id_to_hex
from .keys import KeyBundle

logger = logging.getLogger(__name__)

NONCE_BYTES = 12
KEY_BYTES = 32
_LEN_PREFIX = struct.Struct("<I")


@dataclass(frozen=True)
class EncryptedPayload:
    data: str  # base64
    nonce: str  # base64
    version: int
    downgraded: bool = False  # PQ was attempted but classical was used


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _unb64(value: str, what: str, note_id: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionFailure(f"{what} is not valid base64", note_id, Phase.DECRYPT) from exc


def _aad(envelope_id: str, version: int) -> bytes:
    return f"notesync:{envelope_id}:v{version}".encode("ascii")


def serialize_fields(note: Note) -> bytes:
    body = {
        "title": note.title,
        "content": note.content,
        "created_at": note.created_at,
        "updated_at": note.updated_at,
        "deleted": note.deleted,
    }
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def aead_encrypt(key: bytes, plaintext: bytes, aad: bytes) -> Tuple[bytes, bytes]:
    if len(key) != KEY_BYTES:
        raise EncryptionFailure("AES-256-GCM key must be 32 bytes")
    nonce = os.urandom(NONCE_BYTES)
    return nonce, AESGCM(key).encrypt(nonce, plaintext, aad)


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: bytes, note_id: str) -> bytes:
    if len(nonce) != NONCE_BYTES:
        raise DecryptionFailure("nonce has wrong length", note_id, Phase.DECRYPT)
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, aad)
    except InvalidTag as exc:
        raise DecryptionFailure(
            "authentication failed - data may be corrupted or tampered with", note_id, Phase.DECRYPT
        ) from exc


def frame_pq(kem_ct: bytes, aead_ct: bytes) -> bytes:
    return _LEN_PREFIX.pack(len(kem_ct)) + kem_ct + aead_ct


def unframe_pq(data: bytes, note_id: str) -> Tuple[bytes, bytes]:
    if len(data) < _LEN_PREFIX.size:
        raise DecryptionFailure("post-quantum frame too short", note_id, Phase.DECRYPT)
    (kem_len,) = _LEN_PREFIX.unpack_from(data)
    start = _LEN_PREFIX.size
    if kem_len == 0 or start + kem_len >= len(data):
        raise DecryptionFailure("post-quantum frame length out of range", note_id, Phase.DECRYPT)
    return data[start:start + kem_len], data[start + kem_len:]


class EncryptionEngine:
    def __init__(self, allow_classical_fallback: bool = True):
        self.allow_classical_fallback = allow_classical_fallback

    # -------------------- encrypt --------------------
    def encrypt(self, bundle: KeyBundle, note: Note) -> EncryptedPayload:
        if note.id is None:
            raise EncryptionFailure("note must have an id before encryption", None, Phase.ENCRYPT)
        envelope_id = note_id_to_hex(note.id)
        plaintext = serialize_fields(note)

        if bundle.has_pq:
            try:
                return self._encrypt_pq(bundle, envelope_id, plaintext)
            except Exception as exc:
                if not self.allow_classical_fallback:
                    raise EncryptionFailure(
                        f"post-quantum encryption failed: {exc}", envelope_id, Phase.ENCRYPT
                    ) from exc
                logger.warning(
                    "Post-quantum encryption failed for note %s, using classical: %s",
                    envelope_id,
                    exc,
                )
                payload = self._encrypt_classical(bundle, envelope_id, plaintext)
                return EncryptedPayload(payload.data, payload.nonce, payload.version, downgraded=True)

        return self._encrypt_classical(bundle, envelope_id, plaintext)

    def _encrypt_classical(self, bundle: KeyBundle, envelope_id: str, plaintext: bytes) -> EncryptedPayload:
        nonce, ct = aead_encrypt(bundle.encryption_key, plaintext, _aad(envelope_id, CLASSICAL))
        return EncryptedPayload(_b64(ct), _b64(nonce), CLASSICAL)

    def _encrypt_pq(self, bundle: KeyBundle, envelope_id: str, plaintext: bytes) -> EncryptedPayload:
        shared_secret, kem_ct = bundle.pq_backend.encaps(bundle.pq_encap.public)
        nonce, aead_ct = aead_encrypt(shared_secret, plaintext, _aad(envelope_id, POST_QUANTUM))
        return EncryptedPayload(_b64(frame_pq(kem_ct, aead_ct)), _b64(nonce), POST_QUANTUM)

    # -------------------- decrypt --------------------
    def decrypt(self, bundle: KeyBundle, envelope) -> Note:
        """Decrypt one envelope. Callers verify its signature first."""
        envelope_id = envelope.id
        raw = _unb64(envelope.data, "data", envelope_id)
        nonce = _unb64(envelope.nonce, "nonce", envelope_id)
        aad = _aad(envelope_id, envelope.version)

        if envelope.version == POST_QUANTUM:
            if not bundle.has_pq:
                raise KeyUnavailable(
                    "post-quantum envelope but no post-quantum key", envelope_id, Phase.DECRYPT
                )
            kem_ct, aead_ct = unframe_pq(raw, envelope_id)
            try:
                shared_secret = bundle.pq_backend.decaps(bundle.pq_encap.secret, kem_ct)
            except Exception as exc:
                raise DecryptionFailure(
                    f"decapsulation failed: {exc}", envelope_id, Phase.DECRYPT
                ) from exc
            plaintext = aead_decrypt(shared_secret, nonce, aead_ct, aad, envelope_id)
        elif envelope.version == CLASSICAL:
            plaintext = aead_decrypt(bundle.encryption_key, nonce, raw, aad, envelope_id)
        else:
            raise DecryptionFailure(f"unknown version {envelope.version}", envelope_id, Phase.DECRYPT)

        try:
            fields = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise DecryptionFailure("decrypted body is not valid JSON", envelope_id, Phase.DECRYPT) from exc

        return Note(
            id=note_id_from_hex(envelope_id),
            title=fields.get("title", ""),
            content=fields.get("content", ""),
            created_at=int(fields.get("created_at", 0)),
            updated_at=int(fields.get("updated_at", envelope.timestamp)),
            deleted=bool(fields.get("deleted", False)) or envelope.deleted,
            pending_sync=False,
            encryptionType=envelope.version,
        )
