"""RSA-SHA1 signature checks for Google Play webhook bodies."""

import base64
import binascii
import textwrap

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa


class SignatureConfigError(ValueError):
    """The configured public key is not a usable RSA public key."""


def _normalize_pem(value: str) -> str:
    pem = value.strip().replace("\\n", "\n")
    if pem and "-----BEGIN" not in pem:
        # Play Console shows the key as bare base64
        body = "\n".join(textwrap.wrap("".join(pem.split()), 64))
        pem = f"-----BEGIN PUBLIC KEY-----\n{body}\n-----END PUBLIC KEY-----"
    return pem


def load_public_key(pem_value: str) -> rsa.RSAPublicKey:
    """Parse a PEM (or bare base64 DER) RSA public key."""
    pem = _normalize_pem(pem_value)
    try:
        key = serialization.load_pem_public_key(pem.encode("utf-8"))
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise SignatureConfigError("Google Play public key could not be parsed") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise SignatureConfigError("Google Play public key must be RSA")
    return key


def verify_rsa_sha1_signature(public_key: rsa.RSAPublicKey, message: bytes, signature_b64: str) -> bool:
    """True when ``signature_b64`` is a valid PKCS#1 v1.5 SHA-1 signature of ``message``."""
    if not signature_b64:
        return False
    try:
        signature = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError):
        return False
    try:
        public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA1())
    except InvalidSignature:
        return False
    return True
