"""
Envelope signatures over a canonical, order-fixed serialization.

TBS (to-be-signed) = compact JSON of, in this order:
    id, version, signatureVersion, timestamp, nonce, data[, deleted]
`deleted` is present only when true.

version 1: Ed25519 over SHA-256(TBS)
version 2: ML-DSA-65 over TBS
A signatureVersion that differs from version never verifies, and a
signature is only ever checked against the scheme its version claims.
"""

import base64
import binascii
import hashlib
import json
import logging
from typing import Any, Dict, Mapping

from nacl.exceptions import BadSignatureError

from ..errors import KeyUnavailable, Phase
from ..models import CLASSICAL, POST_QUANTUM, Note, make_envelope, note_id_to_hex
from .engine import EncryptionEngine
from .keys import KeyBundle, PublicKeys

logger = logging.getLogger(__name__)

CANONICAL_ORDER = ("id", "version", "signatureVersion", "timestamp", "nonce", "data")


def canonical_bytes(fields: Mapping[str, Any]) -> bytes:
    ordered: Dict[str, Any] = {}
    for key in CANONICAL_ORDER:
        ordered[key] = fields[key]
    if fields.get("deleted"):
        ordered["deleted"] = True
    return json.dumps(ordered, separators=(",", ":"), ensure_ascii=True).encode("ascii")


def sign(bundle: KeyBundle, fields: Mapping[str, Any]) -> bytes:
    version = fields["version"]
    if fields["signatureVersion"] != version:
        raise ValueError("signatureVersion must match version")
    tbs = canonical_bytes(fields)

    if version == CLASSICAL:
        digest = hashlib.sha256(tbs).digest()
        return bundle.classical_signing.sign(digest).signature
    if version == POST_QUANTUM:
        if bundle.pq_signing is None or bundle.pq_backend is None:
            raise KeyUnavailable("no post-quantum signing key", fields.get("id"), Phase.SIGN)
        return bundle.pq_backend.sign(bundle.pq_signing.secret, tbs)
    raise ValueError(f"unknown version {version}")


def verify(public_keys: PublicKeys, envelope, pq_backend=None) -> bool:
    """True only if the signature matches under the scheme named by `version`."""
    if envelope.signatureVersion != envelope.version:
        logger.warning(
            "Envelope %s: signatureVersion %s does not match version %s",
            envelope.id,
            envelope.signatureVersion,
            envelope.version,
        )
        return False

    try:
        signature = base64.b64decode(envelope.signature, validate=True)
    except (binascii.Error, ValueError):
        return False
    tbs = canonical_bytes(envelope.signable_fields())

    if envelope.version == CLASSICAL:
        try:
            public_keys.classical.verify(hashlib.sha256(tbs).digest(), signature)
            return True
        except (BadSignatureError, ValueError):
            return False

    if envelope.version == POST_QUANTUM:
        if public_keys.pq_signing is None or pq_backend is None:
            logger.warning("Envelope %s is post-quantum but no post-quantum key is loaded", envelope.id)
            return False
        try:
            return pq_backend.verify(public_keys.pq_signing, tbs, signature)
        except Exception as exc:
            logger.debug("ML-DSA verification raised for %s: %s", envelope.id, exc)
            return False

    return False


def seal(bundle: KeyBundle, note: Note, engine: EncryptionEngine):
    """Encrypt then sign a note into an envelope.

    Returns (envelope, downgraded).
    """
    payload = engine.encrypt(bundle, note)
    fields = {
        "id": note_id_to_hex(note.id),
        "version": payload.version,
        "signatureVersion": payload.version,
        "timestamp": note.updated_at,
        "nonce": payload.nonce,
        "data": payload.data,
        "deleted": note.deleted,
    }
    signature = sign(bundle, fields)
    envelope = make_envelope(signature=base64.b64encode(signature).decode("ascii"), **fields)
    return envelope, payload.downgraded
