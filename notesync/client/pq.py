"""
Post-quantum primitives: ML-KEM-768 (FIPS 203) and ML-DSA-65 (FIPS 204).

Backed by kyber-py / dilithium-py. Whether the backend can be used is
discovered at runtime; callers get KeyUnavailable when it cannot.
"""

import logging
from typing import Tuple

from ..errors import KeyUnavailable

logger = logging.getLogger(__name__)

KEM_SEED_BYTES = 64
SIG_SEED_BYTES = 32


class PQBackend:
    name = "ML-KEM-768+ML-DSA-65"

    def __init__(self, kem, dsa):
        self._kem = kem
        self._dsa = dsa

    # ---- key encapsulation ----
    def kem_derive(self, seed: bytes) -> Tuple[bytes, bytes]:
        """Deterministic (encapsulation key, decapsulation key) from a 64-byte seed."""
        if len(seed) != KEM_SEED_BYTES:
            raise ValueError(f"ML-KEM seed must be {KEM_SEED_BYTES} bytes")
        return self._kem.key_derive(seed)

    def encaps(self, ek: bytes) -> Tuple[bytes, bytes]:
        """Returns (shared_secret, kem_ciphertext)."""
        shared_secret, kem_ct = self._kem.encaps(ek)
        return shared_secret, kem_ct

    def decaps(self, dk: bytes, kem_ct: bytes) -> bytes:
        return self._kem.decaps(dk, kem_ct)

    # ---- signatures ----
    def sig_derive(self, seed: bytes) -> Tuple[bytes, bytes]:
        """Deterministic (public key, secret key) from a 32-byte seed."""
        if len(seed) != SIG_SEED_BYTES:
            raise ValueError(f"ML-DSA seed must be {SIG_SEED_BYTES} bytes")
        return self._dsa.key_derive(seed)

    def sign(self, sk: bytes, message: bytes) -> bytes:
        return self._dsa.sign(sk, message)

    def verify(self, pk: bytes, message: bytes, signature: bytes) -> bool:
        return bool(self._dsa.verify(pk, message, signature))


def load_backend() -> PQBackend:
    try:
        from kyber_py.ml_kem import ML_KEM_768
        from dilithium_py.ml_dsa import ML_DSA_65
    except ImportError as exc:
        raise KeyUnavailable(f"post-quantum backend not installed: {exc}") from exc
    return PQBackend(ML_KEM_768, ML_DSA_65)
