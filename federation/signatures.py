"""
federation/signatures.py -- HTTP message signatures for federated requests.

Implements the draft-cavage "Signature" header that Mastodon and most other
ActivityPub servers use:

    Signature: keyId="https://example.com/users/alice#main-key",
               algorithm="rsa-sha256",
               headers="(request-target) host date digest",
               signature="<base64>"

Signing (outgoing, httpx.Request):
  1. Date is set to the current RFC 7231 timestamp.
  2. If the request carries a body, Digest: SHA-256=<base64> is computed over
     the exact bytes that will be sent. request.read() caches the content,
     so the body can still be read (and sent) afterwards.
  3. The signing string is built from the fixed ordered list
     (request-target) host date [digest], one "name: value" line per header.

Verifying (incoming, any object with .method, .url, .headers -- Starlette
requests and httpx requests both qualify):
  1. The header is parsed; a header without keyId or signature is rejected
     before any cryptographic work (MalformedSignatureError).
  2. The signing string is rebuilt from the *claimed* header list. Any named
     header missing from the request fails verification.
  3. When the caller supplies the received body, a body requires a signed
     Digest header and the digest must match the bytes.

Every failure raises UntrustedRequestError. It is an expected outcome --
inbox handlers log it and drop the activity.

Layer rule: federation/ imports only from core/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from email.utils import formatdate

from core.errors import MalformedInputError, MalformedSignatureError, UntrustedRequestError
from federation.keys import sign, verify

logger = logging.getLogger("terminalpub.federation.signatures")

SIGNATURE_ALGORITHM = "rsa-sha256"
# hs2019 is what newer Mastodon releases advertise; for RSA keys it means the
# same RSASSA-PKCS1-v1_5 / SHA-256 computation.
_ACCEPTED_ALGORITHMS = frozenset({"rsa-sha256", "hs2019"})

REQUEST_TARGET = "(request-target)"
_BASE_HEADERS = (REQUEST_TARGET, "host", "date")
_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

_PARAM_RE = re.compile(r'([A-Za-z]+)="([^"]*)"')


@dataclass(frozen=True)
class HTTPSignature:
    """Parsed contents of a Signature header."""

    key_id: str
    algorithm: str
    headers: tuple[str, ...]
    signature: str

    def to_header(self) -> str:
        return (
            f'keyId="{self.key_id}",algorithm="{self.algorithm}",'
            f'headers="{" ".join(self.headers)}",signature="{self.signature}"'
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def body_digest(body: bytes) -> str:
    """Return the Digest header value for body: SHA-256=<base64>."""
    return "SHA-256=" + base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")


def _request_target(method: str, url) -> str:
    # httpx.URL.query is bytes, starlette's URL.query is str
    path = url.path or "/"
    query = url.query
    if isinstance(query, bytes):
        query = query.decode("ascii")
    if query:
        path = f"{path}?{query}"
    return f"{method.lower()} {path}"


def _header_value(request, name: str) -> str | None:
    if name == REQUEST_TARGET:
        return _request_target(request.method, request.url)
    value = request.headers.get(name)
    if value is None and name == "host":
        value = request.url.netloc
        if isinstance(value, bytes):
            value = value.decode("ascii")
    return value or None


def build_signing_string(request, headers: tuple[str, ...] | list[str]) -> str:
    """Build the newline-joined "name: value" signing string.

    Raises UntrustedRequestError if any named header is absent.
    """
    lines = []
    for name in headers:
        value = _header_value(request, name)
        if value is None:
            raise UntrustedRequestError(f"signed header missing from request: {name}", header=name)
        lines.append(f"{name}: {value}")
    return "\n".join(lines)


def parse_signature_header(value: str) -> HTTPSignature:
    """Parse a Signature header value.

    Unknown parameters are ignored. A missing headers parameter defaults to
    "date", as the draft specifies.

    Raises:
        MalformedSignatureError: keyId or signature is missing.
    """
    params = {k: v for k, v in _PARAM_RE.findall(value or "")}
    key_id = params.get("keyId", "")
    signature = params.get("signature", "")
    if not key_id or not signature:
        raise MalformedSignatureError("invalid Signature header: missing keyId or signature")
    headers = tuple(params.get("headers", "date").lower().split())
    return HTTPSignature(
        key_id=key_id,
        algorithm=params.get("algorithm", SIGNATURE_ALGORITHM).lower(),
        headers=headers,
        signature=signature,
    )


def _digest_matches(header_value: str, body: bytes) -> bool:
    expected = body_digest(body)
    # A Digest header may list several algorithms: "SHA-256=...,SHA-512=..."
    for part in header_value.split(","):
        algo, _, value = part.strip().partition("=")
        if algo.strip().upper() == "SHA-256":
            return hmac.compare_digest(value.strip().encode(), expected.partition("=")[2].encode())
    return False


# ---------------------------------------------------------------------------
# Sign / verify
# ---------------------------------------------------------------------------


def sign_request(request, private_key_pem: str, key_id: str) -> HTTPSignature:
    """Sign an outgoing httpx.Request in place and return the signature.

    Sets Date, Digest (when a body is present) and Signature headers. The
    body is read through request.read(), which caches it, so the request can
    still be sent afterwards.
    """
    request.headers["Date"] = formatdate(usegmt=True)

    headers = list(_BASE_HEADERS)
    body = request.read()
    if body or request.method.upper() in _BODY_METHODS:
        request.headers["Digest"] = body_digest(body)
        headers.append("digest")

    signing_string = build_signing_string(request, headers)
    signature = HTTPSignature(
        key_id=key_id,
        algorithm=SIGNATURE_ALGORITHM,
        headers=tuple(headers),
        signature=sign(signing_string, private_key_pem),
    )
    request.headers["Signature"] = signature.to_header()
    return signature


def verify_request(request, public_key_pem: str, body: bytes | None = None) -> HTTPSignature:
    """Verify the Signature header of an incoming request.

    Args:
        request:        Object exposing method, url (with path/query/netloc)
                        and a case-insensitive headers mapping.
        public_key_pem: The signer's public key, resolved by the caller from
                        the keyId (see parse_signature_header).
        body:           The raw received body. When given, a non-empty body
                        must be covered by a signed, matching Digest header.

    Returns:
        The parsed HTTPSignature on success.

    Raises:
        UntrustedRequestError (or its MalformedSignatureError subclass).
    """
    header = request.headers.get("signature")
    if not header:
        raise MalformedSignatureError("missing Signature header")
    parsed = parse_signature_header(header)

    if parsed.algorithm not in _ACCEPTED_ALGORITHMS:
        raise UntrustedRequestError(f"unsupported signature algorithm: {parsed.algorithm}")

    if body is not None:
        digest_header = request.headers.get("digest")
        if body and (digest_header is None or "digest" not in parsed.headers):
            raise UntrustedRequestError("request body is not covered by a signed Digest header")
        if digest_header is not None and not _digest_matches(digest_header, body):
            raise UntrustedRequestError("Digest header does not match the request body")

    signing_string = build_signing_string(request, parsed.headers)
    try:
        ok = verify(signing_string, parsed.signature, public_key_pem)
    except MalformedInputError as exc:
        raise UntrustedRequestError(f"signer key unusable: {exc}", key_id=parsed.key_id) from exc
    if not ok:
        logger.warning("Signature verification failed for keyId=%s", parsed.key_id)
        raise UntrustedRequestError("signature does not verify", key_id=parsed.key_id)
    return parsed


def is_trusted(request, public_key_pem: str, body: bytes | None = None) -> bool:
    """Boolean form of verify_request for callers that only need yes/no."""
    try:
        verify_request(request, public_key_pem, body=body)
    except UntrustedRequestError:
        return False
    return True
