"""
Key derivation: secret phrase -> KeyBundle.

    seed = BIP-39 seed(phrase)                  (PBKDF2-HMAC-SHA512, 2048 rounds)
    encryption_key = HKDF(seed, "notesync/v1/aes-256-gcm")
    ed25519 seed   = HKDF(seed, "notesync/v1/ed25519")
    ML-KEM seed    = HKDF(seed, "notesync/v1/ml-kem-768", 64)
    ML-DSA seed    = HKDF(seed, "notesync/v1/ml-dsa-65")
    owner_id       = SHA-256(seed)

Identical phrases produce identical bundles on every device.
"""

import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from mnemonic import Mnemonic
from nacl.signing import SigningKey, VerifyKey

from ..errors import KeyUnavailable
from .pq import KEM_SEED_BYTES, SIG_SEED_BYTES, PQBackend, load_backend

logger = logging.getLogger(__name__)

LABEL_ENCRYPTION = b"notesync/v1/aes-256-gcm"
LABEL_ED25519 = b"notesync/v1/ed25519"
LABEL_ML_KEM = b"notesync/v1/ml-kem-768"
LABEL_ML_DSA = b"notesync/v1/ml-dsa-65"

_WORDLIST = Mnemonic("english")


@dataclass(frozen=True)
class KeyPair:
    public: bytes
    secret: bytes


@dataclass(frozen=True)
class PublicKeys:
    """What a verifier needs: never contains secret material."""

    classical: VerifyKey
    pq_signing: Optional[bytes] = None


@dataclass(frozen=True, repr=False)
class KeyBundle:
    owner_id: str
    encryption_key: bytes
    classical_signing: SigningKey
    pq_encap: Optional[KeyPair] = None
    pq_signing: Optional[KeyPair] = None
    pq_backend: Optional[PQBackend] = None

    def __repr__(self) -> str:
        return f"KeyBundle(owner_id={self.owner_id[:12]}..., pq={self.has_pq})"

    @property
    def has_pq(self) -> bool:
        return self.pq_backend is not None and self.pq_encap is not None

    def public_keys(self) -> PublicKeys:
        return PublicKeys(
            classical=self.classical_signing.verify_key,
            pq_signing=self.pq_signing.public if self.pq_signing else None,
        )

    def pq_public_key_b64(self) -> Optional[str]:
        if self.pq_encap is None:
            return None
        return base64.b64encode(self.pq_encap.public).decode("ascii")


def generate_phrase() -> str:
    """Fresh 12-word English BIP-39 phrase."""
    return _WORDLIST.generate(strength=128)


def is_valid_phrase(phrase: str) -> bool:
    return _WORDLIST.check(Mnemonic.normalize_string(phrase).strip())


def _expand(seed: bytes, label: bytes, length: int = 32) -> bytes:
    hkdf = HKDF(algorithm=SHA256(), length=length, salt=None, info=label)
    return hkdf.derive(seed)


def derive(phrase: str, use_pq: bool = True) -> KeyBundle:
    normalized = " ".join(Mnemonic.normalize_string(phrase).split())
    if not normalized:
        raise ValueError("secret phrase is empty")
    seed = Mnemonic.to_seed(normalized)

    encryption_key = _expand(seed, LABEL_ENCRYPTION)
    signing_key = SigningKey(_expand(seed, LABEL_ED25519))
    owner_id = hashlib.sha256(seed).hexdigest()

    backend = None
    pq_encap = None
    pq_signing = None
    if use_pq:
        try:
            backend = load_backend()
            ek, dk = backend.kem_derive(_expand(seed, LABEL_ML_KEM, KEM_SEED_BYTES))
            pq_encap = KeyPair(public=ek, secret=dk)
            pk, sk = backend.sig_derive(_expand(seed, LABEL_ML_DSA, SIG_SEED_BYTES))
            pq_signing = KeyPair(public=pk, secret=sk)
        except KeyUnavailable as exc:
            logger.warning("Post-quantum keys unavailable, classical only: %s", exc)
            backend, pq_encap, pq_signing = None, None, None
        except Exception as exc:
            logger.warning("Post-quantum key generation failed, classical only: %s", exc)
            backend, pq_encap, pq_signing = None, None, None

    logger.info("Derived key bundle owner=%s... pq=%s", owner_id[:12], pq_encap is not None)
    return KeyBundle(
        owner_id=owner_id,
        encryption_key=encryption_key,
        classical_signing=signing_key,
        pq_encap=pq_encap,
        pq_signing=pq_signing,
        pq_backend=backend,
    )
