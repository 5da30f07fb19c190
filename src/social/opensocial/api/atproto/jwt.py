"""
JWT, DPoP and PKCE utilities for AT Protocol OAuth.

Provides helpers for the three proofs an AT Protocol confidential client produces:
- PKCE verifier/challenge pairs (RFC 7636)
- DPoP proofs binding a request to an ephemeral key (RFC 9449)
- Client assertions authenticating the client with its signing key (RFC 7523)
"""

import base64
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple
from jwcrypto import jwk
from ulid import ULID

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


def _b64_sha256(value: str) -> str:
    hashed = hashlib.sha256(value.encode("ascii")).digest()
    return base64.urlsafe_b64encode(hashed).decode("ascii").rstrip("=")


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge.

    Returns:
        Tuple[str, str]: (pkce_verifier, pkce_challenge)
    """
    pkce_verifier = secrets.token_urlsafe(64)
    return pkce_verifier, _b64_sha256(pkce_verifier)


def access_token_hash(access_token: str) -> str:
    """Value of the DPoP `ath` claim for an access token."""
    return _b64_sha256(access_token)


def generate_dpop_key() -> Tuple[jwk.JWK, Dict[str, Any]]:
    """Generate a new ES256 DPoP key.

    Returns:
        Tuple[jwk.JWK, Dict[str, Any]]: the private key and its public portion as a dict
    """
    dpop_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    public_key_dict = dpop_key.export_public(as_dict=True)
    return dpop_key, public_key_dict


def create_dpop_header(public_key_dict: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "alg": "ES256",
        "jwk": public_key_dict,
        "typ": "dpop+jwt",
    }


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP claims binding a proof to an HTTP method and URI.

    When an access token is given, its hash is included as `ath` so the proof is also bound
    to the token presented to a resource server.
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims: Dict[str, Any] = {
        "htm": http_method.upper(),
        "htu": http_uri,
        "iat": int(issued_at.timestamp()),
        "exp": int(issued_at.timestamp()) + expires_in_seconds,
    }

    if nonce is not None:
        claims["nonce"] = nonce

    if access_token is not None:
        claims["ath"] = access_token_hash(access_token)

    return claims


def create_client_assertion_header(signing_key_id: str) -> Dict[str, Any]:
    return {"alg": "ES256", "kid": signing_key_id}


def create_client_assertion_claims(
    client_id: str,
    audience: str,
    issued_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Create client assertion claims for `private_key_jwt` authentication.

    The `jti` claim is added at signing time so retries never reuse an assertion.
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    return {
        "iss": client_id,
        "sub": client_id,
        "aud": audience,
        "iat": int(issued_at.timestamp()),
    }
