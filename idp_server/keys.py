"""
RSA signing keys for JWTs: the current key, plus an optional previous key kept in the JWKS during rotation.
Loaded from PEM files, or generated and persisted on first start; no key material in code.
"""
import base64
import logging
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, generate_private_key

logger = logging.getLogger(__name__)

_KEY_BITS = 2048
KID_CURRENT = "idp-key"
KID_PREVIOUS = "idp-key-prev"
SIGNING_ALG = "RS256"


def _read_pem(path: Path) -> RSAPrivateKey:
    return serialization.load_pem_private_key(path.read_bytes(), password=None)


def load_or_create_signing_key(path: str | None) -> RSAPrivateKey:
    """Load the RSA private key at path, or generate one and try to save it there."""
    p = Path(path or ".idp_signing_key.pem")
    if p.exists():
        try:
            return _read_pem(p)
        except (ValueError, TypeError) as e:
            logger.warning("Failed to load signing key from %s: %s; generating new key", p, e)
    key = generate_private_key(public_exponent=65537, key_size=_KEY_BITS)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    try:
        p.write_bytes(pem)
        logger.info("Generated and saved signing key to %s", p)
    except OSError as e:
        logger.warning("Could not save signing key to %s: %s", p, e)
    return key


def _b64_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def public_key_to_jwk(public_key, kid: str) -> dict:
    numbers = public_key.public_numbers()
    return {
        "kty": "RSA",
        "kid": kid,
        "alg": SIGNING_ALG,
        "use": "sig",
        "n": _b64_uint(numbers.n),
        "e": _b64_uint(numbers.e),
    }


_keys_by_kid: dict[str, RSAPrivateKey] = {}


def _ensure_keys_loaded() -> None:
    if KID_CURRENT in _keys_by_kid:
        return
    from idp_server.config import SIGNING_KEY_PATH, SIGNING_KEY_PREVIOUS_PATH

    _keys_by_kid[KID_CURRENT] = load_or_create_signing_key(SIGNING_KEY_PATH)
    if SIGNING_KEY_PREVIOUS_PATH and Path(SIGNING_KEY_PREVIOUS_PATH).exists():
        try:
            _keys_by_kid[KID_PREVIOUS] = _read_pem(Path(SIGNING_KEY_PREVIOUS_PATH))
            logger.info("Loaded previous signing key (kid=%s) for rotation", KID_PREVIOUS)
        except (ValueError, TypeError) as e:
            logger.warning("Failed to load previous signing key from %s: %s", SIGNING_KEY_PREVIOUS_PATH, e)


def get_signing_key() -> tuple[RSAPrivateKey, str]:
    """Current private key and its kid, for signing new tokens."""
    _ensure_keys_loaded()
    return _keys_by_kid[KID_CURRENT], KID_CURRENT


def get_public_key_for_kid(kid: str | None):
    """Public key for kid, or None if unknown."""
    _ensure_keys_loaded()
    private_key = _keys_by_kid.get(kid or "")
    if private_key is None:
        return None
    return private_key.public_key()


def get_jwks() -> dict:
    _ensure_keys_loaded()
    return {"keys": [public_key_to_jwk(k.public_key(), kid) for kid, k in _keys_by_kid.items()]}
