"""
kudos.engine.signatures — Webhook signature verification
=========================================================

Two signing schemes arrive at the webhook routes:

* **CRM v3** — ``X-HubSpot-Signature-v3`` is the base64 HMAC-SHA256 of
  ``method + url + body + timestamp``.  The URL the sender signed is the one
  *it* saw, which behind proxies may differ from the one we see, so a set of
  URL candidates is tried.
* **Telephony** — ``x-zm-signature`` is either ``v0=<hex>`` (HMAC of the
  body under the verification token or the secret) or ``v0:<ts>:<base64>``
  (timestamped, rejected outside the allowed clock skew).

Every function here is pure (no I/O) so the rules can be tested without a
web server.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from urllib.parse import urljoin

__all__ = [
    "VerificationResult",
    "url_candidates",
    "sign_crm_v3",
    "verify_crm_v3",
    "verify_telephony",
    "find_plain_token",
    "url_validation_response",
    "read_bearer",
]

_HEX_RE = re.compile(r"^v0=([a-f0-9]{64})$", re.IGNORECASE)
_TS_RE = re.compile(r"^v0[:=](\d+):([A-Za-z0-9+/=]+)$")

BEARER_HEADERS: tuple[str, ...] = (
    "authorization",
    "x-authorization",
    "x-auth",
    "x-zoom-authorization",
    "zoom-authorization",
)


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """Outcome of a signature check.

    ``variant`` names the scheme that matched; ``reason`` explains a failure;
    ``matched_url`` is the CRM URL candidate that produced the signature.
    """

    ok: bool
    variant: str = ""
    reason: str = ""
    matched_url: str | None = None


def _hmac(key: str, message: bytes) -> bytes:
    return hmac.new(key.encode("utf-8"), message, hashlib.sha256).digest()


# ---------------------------------------------------------------------------
# CRM v3
# ---------------------------------------------------------------------------
def url_candidates(
    path_with_query: str,
    path_only: str | None = None,
    *,
    forwarded_proto: str = "",
    host: str = "",
    public_base_url: str = "",
) -> list[str]:
    """Build the ordered, de-duplicated list of URLs the sender may have signed.

    Each candidate appears with and without a trailing slash.
    """
    seen: dict[str, None] = {}

    def add(url: str) -> None:
        if not url:
            return
        seen.setdefault(url, None)
        seen.setdefault(url[:-1] if url.endswith("/") else url + "/", None)

    path_only = path_only if path_only is not None else path_with_query.split("?", 1)[0]
    proto = (forwarded_proto.split(",")[0].strip() or "https")
    host = host.split(",")[0].strip()

    add(path_with_query)
    add(path_only)
    if host:
        add(f"{proto}://{host}{path_with_query}")
        add(f"{proto}://{host}{path_only}")
    if public_base_url:
        add(urljoin(public_base_url, path_with_query))
        add(urljoin(public_base_url, path_only))
    return list(seen)


def sign_crm_v3(secret: str, method: str, url: str, body: bytes, timestamp: str) -> str:
    """Return the base64 v3 signature for one URL candidate."""
    base = method.upper().encode() + url.encode() + body + timestamp.encode()
    return base64.b64encode(_hmac(secret, base)).decode("ascii")


def verify_crm_v3(
    secret: str,
    method: str,
    signature: str,
    timestamp: str,
    body: bytes,
    candidates: Iterable[str],
) -> VerificationResult:
    """Check *signature* against every URL candidate.

    All candidates are compared with :func:`hmac.compare_digest`; the loop
    never exits early so timing does not reveal which candidate failed.
    """
    if not secret:
        return VerificationResult(False, reason="no_secret")
    if not signature:
        return VerificationResult(False, reason="no_signature")

    matched: str | None = None
    given = signature.strip().encode("ascii", "replace")
    for url in candidates:
        expected = sign_crm_v3(secret, method, url, body, timestamp).encode("ascii")
        if hmac.compare_digest(expected, given) and matched is None:
            matched = url
    if matched is None:
        return VerificationResult(False, variant="v3", reason="signature_mismatch")
    return VerificationResult(True, variant="v3", matched_url=matched)


# ---------------------------------------------------------------------------
# Telephony
# ---------------------------------------------------------------------------
def verify_telephony(
    header: str,
    body: bytes,
    *,
    secret: str = "",
    verification_token: str = "",
    skew_seconds: int = 300,
    now: float | None = None,
) -> VerificationResult:
    """Verify an ``x-zm-signature`` header against the raw request *body*."""
    header = (header or "").strip()
    if not header:
        return VerificationResult(False, reason="no_header")

    m_hex = _HEX_RE.match(header)
    if m_hex:
        given = bytes.fromhex(m_hex.group(1))
        if verification_token and hmac.compare_digest(_hmac(verification_token, body), given):
            return VerificationResult(True, variant="hex_vtoken")
        if secret:
            macs = (
                _hmac(secret, body),
                _hmac(secret, b"v0" + body),
                _hmac(secret, b"v0:" + body),
            )
            hits = [hmac.compare_digest(mac, given) for mac in macs]
            if any(hits):
                return VerificationResult(True, variant="hex_secret")
        return VerificationResult(False, variant="hex", reason="signature_mismatch_hex")

    m_ts = _TS_RE.match(header)
    if not m_ts:
        return VerificationResult(False, reason="bad_format")

    ts = int(m_ts.group(1))
    given_b64 = m_ts.group(2).encode("ascii")
    current = time.time() if now is None else now
    if abs(int(current) - ts) > skew_seconds:
        return VerificationResult(False, variant="v0_ts_b64", reason="timestamp_skew")
    if not secret:
        return VerificationResult(False, variant="v0_ts_b64", reason="no_secret")

    mac_a = base64.b64encode(_hmac(secret, str(ts).encode() + body))
    mac_b = base64.b64encode(_hmac(secret, f"v0:{ts}:".encode() + body))
    hits = [hmac.compare_digest(mac_a, given_b64), hmac.compare_digest(mac_b, given_b64)]
    if any(hits):
        return VerificationResult(True, variant="v0_ts_b64")
    return VerificationResult(False, variant="v0_ts_b64", reason="signature_mismatch")


def read_bearer(headers: Mapping[str, str]) -> str:
    """Return the token from the first bearer-style header that is present."""
    for name in BEARER_HEADERS:
        value = headers.get(name)
        if not value:
            continue
        value = value.strip()
        if value.lower().startswith("bearer "):
            value = value[7:]
        return value.strip()
    return ""


# ---------------------------------------------------------------------------
# URL-validation handshake
# ---------------------------------------------------------------------------
def find_plain_token(payload: object) -> str | None:
    """Locate ``plainToken`` at the top level, under ``payload`` or ``event``."""
    if not isinstance(payload, dict):
        return None
    for container in (payload, payload.get("payload"), payload.get("event")):
        if isinstance(container, dict) and container.get("plainToken"):
            return str(container["plainToken"])
    return None


def url_validation_response(payload: object, key: str) -> dict | None:
    """Build the handshake answer, or ``None`` when *payload* is not a handshake."""
    plain = find_plain_token(payload)
    if plain is None:
        return None
    encrypted = hmac.new(key.encode("utf-8"), plain.encode("utf-8"), hashlib.sha256).hexdigest()
    return {"plainToken": plain, "encryptedToken": encrypted}
