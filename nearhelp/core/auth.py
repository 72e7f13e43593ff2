import os
import time
from typing import Any, Callable, Dict, List, Optional

import requests
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi import Header
from jose import JWTError, jwt
from jose.utils import base64url_decode
from loguru import logger

from nearhelp.core.errors import AuthUnavailable, Unauthenticated

# ------------------------------------------------------------
# Configuration
# ------------------------------------------------------------
SUPABASE_URL = os.getenv("SUPABASE_URL", "http://localhost:54321")

# "jwks" (ES256, keys published by Supabase) or "hs256" (shared secret)
AUTH_VERIFY_MODE = os.getenv("AUTH_VERIFY_MODE", "jwks").lower()
AUTH_DEBUG = os.getenv("AUTH_DEBUG", "false").lower() in ("1", "true", "yes")
JWKS_TTL_SECONDS = int(os.getenv("JWKS_TTL_SECONDS", "600"))

# ES256 only; anything else in the header is rejected before a key lookup
_ES256 = "ES256"


# ------------------------------------------------------------
# Signing keys
# ------------------------------------------------------------
class _JwksCache:
    def __init__(self, ttl: int = JWKS_TTL_SECONDS):
        self.ttl = ttl
        self._keys: List[Dict[str, Any]] = []
        self._fetched_at = 0.0

    def _fetch(self) -> List[Dict[str, Any]]:
        anon_key = os.getenv("SUPABASE_ANON_KEY")
        if not anon_key:
            raise RuntimeError("SUPABASE_ANON_KEY must be set when AUTH_VERIFY_MODE=jwks")

        url = f"{SUPABASE_URL}/auth/v1/.well-known/jwks.json"
        try:
            resp = requests.get(url, headers={"apikey": anon_key}, timeout=10)
            resp.raise_for_status()
            keys = resp.json()["keys"]
        except requests.RequestException as exc:
            logger.warning(f"[auth] JWKS fetch failed: {exc!r}")
            raise AuthUnavailable("signing keys unavailable")
        except (ValueError, KeyError):
            logger.warning(f"[auth] JWKS response unusable | HTTP {resp.status_code}")
            raise AuthUnavailable("signing keys unavailable")

        logger.info(f"[auth] JWKS refreshed | keys={len(keys)}")
        return keys

    def find(self, kid: str) -> Optional[Dict[str, Any]]:
        expired = time.time() - self._fetched_at >= self.ttl
        if expired or not self._keys:
            self._keys = self._fetch()
            self._fetched_at = time.time()

        key = next((k for k in self._keys if k.get("kid") == kid), None)
        if key is None and not expired:
            # unknown kid right after a rotation: refetch once
            self._keys = self._fetch()
            self._fetched_at = time.time()
            key = next((k for k in self._keys if k.get("kid") == kid), None)
        return key


_jwks = _JwksCache()


def _ec_public_key(jwk: Dict[str, Any]) -> ec.EllipticCurvePublicKey:
    x = int.from_bytes(base64url_decode(jwk["x"].encode()), "big")
    y = int.from_bytes(base64url_decode(jwk["y"].encode()), "big")
    return ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1()).public_key()


# ------------------------------------------------------------
# Verification
# ------------------------------------------------------------
def _decode_hs256(token: str) -> Dict[str, Any]:
    secret = os.getenv("SUPABASE_JWT_SECRET")
    if not secret:
        raise RuntimeError("SUPABASE_JWT_SECRET must be set when AUTH_VERIFY_MODE=hs256")
    try:
        return jwt.decode(token, secret, algorithms=["HS256"], options={"verify_aud": False})
    except JWTError:
        raise Unauthenticated("Invalid or expired token")


def _decode_es256(token: str) -> Dict[str, Any]:
    try:
        header = jwt.get_unverified_header(token)
    except JWTError:
        raise Unauthenticated("Malformed token")

    if header.get("alg") != _ES256:
        raise Unauthenticated(f"Unsupported JWT alg: {header.get('alg')}")
    kid = header.get("kid")
    if not kid:
        raise Unauthenticated("Token missing kid")

    jwk = _jwks.find(kid)
    if jwk is None:
        raise Unauthenticated("No signing key for kid")

    try:
        return jwt.decode(token, _ec_public_key(jwk), algorithms=[_ES256], options={"verify_aud": False})
    except JWTError:
        raise Unauthenticated("Invalid or expired token")


_DECODERS: Dict[str, Callable[[str], Dict[str, Any]]] = {
    "hs256": _decode_hs256,
    "jwks": _decode_es256,
}


def entity_id_from_token(token: str) -> str:
    """
    Verify a bare token and return its subject. The entity id always comes
    from here, never from a request body, so a client can only ever write
    its own position record.
    """
    if not token:
        raise Unauthenticated("Missing bearer token")

    decode = _DECODERS.get(AUTH_VERIFY_MODE)
    if decode is None:
        raise RuntimeError(f"Invalid AUTH_VERIFY_MODE: {AUTH_VERIFY_MODE}")

    claims = decode(token)
    sub = claims.get("sub")
    if not sub:
        raise Unauthenticated("Token missing sub claim")

    if AUTH_DEBUG:
        logger.debug(f"[auth] mode={AUTH_VERIFY_MODE} entity_id={sub}")
    return str(sub)


# ------------------------------------------------------------
# FastAPI dependency
# ------------------------------------------------------------
def get_current_entity_id(authorization: Optional[str] = Header(default=None)) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("Expected 'Authorization: Bearer <token>'")
    return entity_id_from_token(token.strip())
