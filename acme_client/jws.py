"""
JWK / JWS / EAB utilities for the ACME protocol (RFC 8555 + RFC 8739).

Uses *josepy* (the library powering Certbot) for key wrapping and RFC 7638
thumbprints.

Responsibilities (boundary with acme_client/crypto.py):
  - Generate the **account** key (EC P-256 by default, RSA on request)
  - Serialize / parse the account key as PEM for the secret store
  - Compute JWK thumbprint (for DNS-01 key-authorizations)
  - Sign ACME POST bodies as JWS (with jwk or kid header, ES256 or RS256)
  - Build the EAB outer-JWS for EAB-capable CAs (ZeroSSL, Sectigo, ...)
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from josepy.jwk import JWK, JWKEC, JWKRSA


# ─── Account key I/O ──────────────────────────────────────────────────────────


def generate_account_key(key_type: str = "ec", key_size: int = 2048) -> JWK:
    """Generate a new account key wrapped in a josepy JWK."""
    if key_type == "rsa":
        return JWKRSA(key=rsa.generate_private_key(public_exponent=65537, key_size=key_size))
    if key_type == "ec":
        return JWKEC(key=ec.generate_private_key(ec.SECP256R1()))
    raise ValueError(f"unsupported account key type: {key_type!r}")


def account_key_to_pem(jwk: JWK) -> str:
    """Serialize the account private key as unencrypted PKCS8 PEM."""
    return jwk.key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def load_account_key_pem(pem: str) -> JWK:
    """
    Parse an account key PEM (PKCS8, SEC1 or PKCS1) into a JWK.

    Raises ValueError if the PEM is unreadable or holds an unsupported key type.
    """
    private_key = serialization.load_pem_private_key(pem.encode(), password=None)
    if isinstance(private_key, rsa.RSAPrivateKey):
        return JWKRSA(key=private_key)
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        if not isinstance(private_key.curve, ec.SECP256R1):
            raise ValueError(f"unsupported EC curve: {private_key.curve.name}")
        return JWKEC(key=private_key)
    raise ValueError(f"unsupported account key type: {type(private_key).__name__}")


# ─── JWK thumbprint ───────────────────────────────────────────────────────────


def public_jwk(jwk: JWK) -> dict:
    """Public JWK as a JSON-ready dict (includes "kty")."""
    return jwk.public_key().to_partial_json()


def compute_jwk_thumbprint(jwk: JWK) -> str:
    """
    Compute the base64url SHA-256 thumbprint of the public JWK (RFC 7638).
    Used to construct the key-authorization:
      key_authorization = token + "." + thumbprint
    """
    return _b64url(jwk.public_key().thumbprint(hash_function=hashes.SHA256))


def compute_key_authorization(token: str, jwk: JWK) -> str:
    """Return the key-authorization string for *token*."""
    return f"{token}.{compute_jwk_thumbprint(jwk)}"


# ─── JWS signing ─────────────────────────────────────────────────────────────


def signing_algorithm(jwk: JWK) -> str:
    return "ES256" if isinstance(jwk, JWKEC) else "RS256"


def sign_request(
    payload: dict | None,
    account_key: JWK,
    nonce: str,
    url: str,
    account_url: str | None = None,
) -> dict:
    """
    Sign an ACME request payload and return the JWS dict to POST.

    If *account_url* is None the JWS header uses the full JWK (used for
    newAccount).  If *account_url* is set the header uses the shorter "kid"
    form (used for all subsequent requests).  A None payload produces a
    POST-as-GET body.
    """
    header: dict[str, Any] = {
        "alg": signing_algorithm(account_key),
        "nonce": nonce,
        "url": url,
    }
    if account_url:
        header["kid"] = account_url
    else:
        header["jwk"] = public_jwk(account_key)

    protected = _b64url(json.dumps(header).encode())
    if payload is None:
        payload_b64 = ""
    else:
        payload_b64 = _b64url(json.dumps(payload).encode())

    signing_input = f"{protected}.{payload_b64}".encode()
    signature = _sign(account_key, signing_input)

    return {
        "protected": protected,
        "payload": payload_b64,
        "signature": _b64url(signature),
    }


# ─── EAB (External Account Binding) ──────────────────────────────────────────


def create_eab_jws(
    account_jwk: JWK,
    eab_kid: str,
    eab_hmac_key_b64url: str,
    new_account_url: str,
) -> dict:
    """
    Build the EAB outer-JWS required by EAB-capable CAs.

    Per RFC 8739:
      - Protected header: {"alg":"HS256","kid":<eab_kid>,"url":<newAccount url>}
      - Payload: the account public JWK
      - Signature: HMAC-SHA256 keyed with the decoded EAB HMAC key

    Raises ValueError if the key ID is empty, the HMAC key is not base64url,
    or the decoded HMAC key is shorter than 16 bytes.
    """
    if not eab_kid or not eab_kid.strip():
        raise ValueError("EAB key ID (eab_kid) cannot be empty")

    if not eab_hmac_key_b64url or not eab_hmac_key_b64url.strip():
        raise ValueError("EAB HMAC key (eab_hmac_key_b64url) cannot be empty")

    try:
        hmac_key = _b64url_decode(eab_hmac_key_b64url)
    except Exception as exc:
        raise ValueError(f"EAB HMAC key is not valid base64url: {exc!s}") from exc

    if len(hmac_key) < 16:
        raise ValueError(
            f"EAB HMAC key is too short: {len(hmac_key)} bytes. "
            f"Must be at least 16 bytes (128 bits) per RFC 8555."
        )

    eab_header = {
        "alg": "HS256",
        "kid": eab_kid,
        "url": new_account_url,
    }
    protected = _b64url(json.dumps(eab_header).encode())
    payload = _b64url(json.dumps(public_jwk(account_jwk)).encode())

    signing_input = f"{protected}.{payload}".encode()
    mac = hmac.new(hmac_key, signing_input, hashlib.sha256).digest()

    return {
        "protected": protected,
        "payload": payload,
        "signature": _b64url(mac),
    }


# ─── Internal helpers ─────────────────────────────────────────────────────────


def _b64url(data: bytes) -> str:
    """URL-safe base64 encoding with no padding (as required by JOSE)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    """URL-safe base64 decode, adding padding as needed."""
    pad = 4 - len(s) % 4
    if pad != 4:
        s += "=" * pad
    return base64.urlsafe_b64decode(s)


def _sign(jwk: JWK, data: bytes) -> bytes:
    """RS256 (PKCS1v15 + SHA-256) or ES256 (raw r||s, 32 bytes each)."""
    if isinstance(jwk, JWKEC):
        der = jwk.key.sign(data, ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        return r.to_bytes(32, "big") + s.to_bytes(32, "big")
    return jwk.key.sign(data, padding.PKCS1v15(), hashes.SHA256())
