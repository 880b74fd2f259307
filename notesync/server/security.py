import base64
import binascii
import re

from fastapi import HTTPException
from packaging.version import InvalidVersion, Version

UPGRADE_MESSAGE = "Please update your client to the latest version"

_OWNER_ID_RE = re.compile(r"^[A-Za-z0-9+/=_\-]{16,128}$")
_MAX_PQ_KEY_BYTES = 4096


# ---- minimum client version gate ----
def check_client_version(client_version: str, minimum: str) -> None:
    try:
        ok = Version(client_version) >= Version(minimum)
    except InvalidVersion:
        ok = False
    if not ok:
        raise HTTPException(status_code=426, detail=UPGRADE_MESSAGE)


# ---- owner id: hex or base64, never the phrase itself ----
def validate_owner_id(owner_id: str) -> str:
    owner_id = (owner_id or "").strip()
    if not _OWNER_ID_RE.match(owner_id):
        raise HTTPException(status_code=400, detail="Invalid public_key")
    return owner_id


def _b64_any_to_bytes(s: str) -> bytes:
    s = s.strip()
    # try standard base64 first
    try:
        return base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError):
        pass
    # urlsafe base64 (add padding if missing)
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)


def validate_pq_public_key(pq_public_key: str) -> str:
    try:
        raw = _b64_any_to_bytes(pq_public_key)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Invalid pq_public_key encoding")
    if not raw or len(raw) > _MAX_PQ_KEY_BYTES:
        raise HTTPException(status_code=400, detail="Invalid pq_public_key length")
    return pq_public_key.strip()
