"""mandate_rail.mandate.signer

Sign and verify mandate envelopes.

The signature covers the canonical JSON of the payload, never the header.
Verification collects every violation it can see; the signature is only
checked when nothing structural is wrong. A missing public key is not a
violation, it raises: we fail closed rather than report a soft "no".
"""

from __future__ import annotations

import base64
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from mandate_rail import MANDATE_ALG, MANDATE_TYPE
from mandate_rail.core.codec import payload_hash, stable_stringify
from mandate_rail.core.exceptions import MandateError
from mandate_rail.core.time import parse_dt, utc_now
from mandate_rail.mandate.keys import PublicKeyResolver, env_public_key_resolver, private_key_from_env

DEFAULT_CLOCK_SKEW_MS = 5 * 60 * 1000


class Violation:
    MISSING_PROTECTED = "missing_protected"
    MISSING_PAYLOAD = "missing_payload"
    MISSING_SIGNATURE = "missing_signature"
    MISSING_KID = "missing_kid"
    UNSUPPORTED_ALG = "unsupported_alg"
    INVALID_IAT = "invalid_iat"
    IAT_IN_FUTURE = "iat_in_future"
    INVALID_EXP = "invalid_exp"
    EXPIRED = "expired"
    BAD_SIGNATURE = "bad_signature"


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    pad = (4 - len(s) % 4) % 4
    return base64.urlsafe_b64decode(s + "=" * pad)


@dataclass(frozen=True, slots=True)
class VerificationResult:
    ok: bool
    violations: list[str] = field(default_factory=list)
    kid: str | None = None
    payload_hash: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "violations": list(self.violations), "kid": self.kid, "payloadHash": self.payload_hash}


def sign_mandate(
    payload: Mapping[str, Any],
    *,
    kid: str,
    private_key: Ed25519PrivateKey | None = None,
    protected_header: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Return ``{protected, payload, signature}``."""

    k = str(kid or "").strip()
    if not k:
        raise MandateError("kid is required")

    header: dict[str, Any] = {"v": 1, "typ": MANDATE_TYPE, "alg": MANDATE_ALG, "kid": k}
    header.update(protected_header or {})

    key = private_key or private_key_from_env()
    sig = key.sign(stable_stringify(payload).encode("utf-8"))
    return {"protected": header, "payload": dict(payload), "signature": b64url_encode(sig)}


def _ts_violation(value: Any, invalid: str) -> tuple[str | None, datetime | None]:
    if not isinstance(value, str):
        return invalid, None
    try:
        return None, parse_dt(value)
    except ValueError:
        return invalid, None


def verify_mandate(
    envelope: Any,
    *,
    now: datetime | Callable[[], datetime] | None = None,
    clock_skew_ms: int = DEFAULT_CLOCK_SKEW_MS,
    resolve_public_key: PublicKeyResolver | None = None,
) -> VerificationResult:
    violations: list[str] = []
    env = envelope if isinstance(envelope, Mapping) else {}
    header = env.get("protected")
    payload = env.get("payload")
    signature = env.get("signature")

    if not isinstance(header, Mapping) or not header:
        violations.append(Violation.MISSING_PROTECTED)
        header = {}
    if not isinstance(payload, Mapping) or not payload:
        violations.append(Violation.MISSING_PAYLOAD)
        payload = None
    if not isinstance(signature, str) or not signature:
        violations.append(Violation.MISSING_SIGNATURE)

    kid = header.get("kid")
    if not isinstance(kid, str) or not kid:
        violations.append(Violation.MISSING_KID)
        kid = None
    alg = header.get("alg")
    if alg and alg != MANDATE_ALG:
        violations.append(Violation.UNSUPPORTED_ALG)

    ref = now() if callable(now) else (now or utc_now())
    skew_s = clock_skew_ms / 1000.0

    if payload is not None and payload.get("iat"):
        err, t = _ts_violation(payload.get("iat"), Violation.INVALID_IAT)
        if err:
            violations.append(err)
        elif t is not None and (t - ref).total_seconds() > skew_s:
            violations.append(Violation.IAT_IN_FUTURE)

    if payload is not None and payload.get("exp"):
        err, t = _ts_violation(payload.get("exp"), Violation.INVALID_EXP)
        if err:
            violations.append(err)
        elif t is not None and (ref - t).total_seconds() > skew_s:
            violations.append(Violation.EXPIRED)

    if not violations:
        if payload is None or kid is None:
            raise MandateError("envelope passed shape checks without payload or kid")
        resolver = resolve_public_key or env_public_key_resolver()
        pub = resolver(kid)
        try:
            pub.verify(b64url_decode(str(signature)), stable_stringify(payload).encode("utf-8"))
        except (InvalidSignature, ValueError):
            violations.append(Violation.BAD_SIGNATURE)

    return VerificationResult(
        ok=not violations,
        violations=violations,
        kid=kid,
        payload_hash=payload_hash(payload) if payload is not None else None,
    )


def build_chain_hash(prev_envelope: Any) -> str:
    """``prev_hash`` for the next mandate in the chain."""

    payload = prev_envelope.get("payload") if isinstance(prev_envelope, Mapping) else None
    if not isinstance(payload, Mapping) or not payload:
        raise MandateError("Invalid previous mandate")
    return payload_hash(payload)


def verify_chain_link(prev_envelope: Any, next_envelope: Any) -> bool:
    nxt = next_envelope.get("payload") if isinstance(next_envelope, Mapping) else None
    if not isinstance(nxt, Mapping):
        return False
    try:
        return nxt.get("prev_hash") == build_chain_hash(prev_envelope)
    except MandateError:
        return False
