"""mandate_rail.mandate.keys

Ed25519 key material, supplied from the environment.

- private key: ``AP2_PRIVATE_KEY`` (PEM)
- public keys: ``AP2_PUBLIC_KEYS_JSON`` (``{"<kid>": "<PEM>"}``), else
  ``AP2_PUBLIC_KEY_<kid with non-alphanumerics replaced by _>``

Keys are never generated or rotated here. A missing key is a hard error.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Callable, Mapping

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from mandate_rail.core.exceptions import MandateError, MissingKeyError

PRIVATE_KEY_ENV = "AP2_PRIVATE_KEY"
PUBLIC_KEYS_JSON_ENV = "AP2_PUBLIC_KEYS_JSON"
PUBLIC_KEY_ENV_PREFIX = "AP2_PUBLIC_KEY_"

PublicKeyResolver = Callable[[str], Ed25519PublicKey]


def _pem_text(value: str | None, kind: str) -> bytes:
    raw = str(value or "").strip()
    if not raw:
        raise MissingKeyError(f"Missing {kind} key")
    # Single-line env values often carry literal "\n".
    raw = raw.replace("\\n", "\n")
    if "-----BEGIN" not in raw:
        raise MandateError(f"Unsupported {kind} key format (expected PEM)")
    return raw.encode("utf-8")


def sanitize_kid(kid: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", kid)


def load_private_key_pem(pem: str | None, *, kind: str = PRIVATE_KEY_ENV) -> Ed25519PrivateKey:
    try:
        key = serialization.load_pem_private_key(_pem_text(pem, kind), password=None)
    except (TypeError, ValueError) as e:
        raise MandateError(f"{kind} could not be parsed") from e
    if not isinstance(key, Ed25519PrivateKey):
        raise MandateError(f"{kind} is not an Ed25519 key")
    return key


def load_public_key_pem(pem: str | None, *, kind: str) -> Ed25519PublicKey:
    try:
        key = serialization.load_pem_public_key(_pem_text(pem, kind))
    except ValueError as e:
        raise MandateError(f"{kind} could not be parsed") from e
    if not isinstance(key, Ed25519PublicKey):
        raise MandateError(f"{kind} is not an Ed25519 key")
    return key


def private_key_from_env(env: Mapping[str, str] | None = None) -> Ed25519PrivateKey:
    e = os.environ if env is None else env
    return load_private_key_pem(e.get(PRIVATE_KEY_ENV))


def public_key_from_env(kid: str, env: Mapping[str, str] | None = None) -> Ed25519PublicKey:
    e = os.environ if env is None else env
    k = str(kid or "").strip()
    if not k:
        raise MissingKeyError("Missing kid")

    direct = e.get(PUBLIC_KEYS_JSON_ENV)
    if direct:
        try:
            mapping = json.loads(direct)
        except ValueError as err:
            raise MandateError(f"Invalid {PUBLIC_KEYS_JSON_ENV} (expected JSON object)") from err
        if not isinstance(mapping, dict):
            raise MandateError(f"Invalid {PUBLIC_KEYS_JSON_ENV} (expected JSON object)")
        pem = mapping.get(k)
        if pem:
            return load_public_key_pem(str(pem), kind=f"{PUBLIC_KEYS_JSON_ENV}[{k}]")

    env_name = PUBLIC_KEY_ENV_PREFIX + sanitize_kid(k)
    pem = e.get(env_name)
    if not pem:
        raise MissingKeyError(f"Missing public key for kid={k} (set {env_name} or {PUBLIC_KEYS_JSON_ENV})")
    return load_public_key_pem(pem, kind=env_name)


def env_public_key_resolver(env: Mapping[str, str] | None = None) -> PublicKeyResolver:
    return lambda kid: public_key_from_env(kid, env)


def static_resolver(keys: Mapping[str, Ed25519PublicKey]) -> PublicKeyResolver:
    """Resolver over an in-memory kid map. Unknown kids fail closed."""

    def _resolve(kid: str) -> Ed25519PublicKey:
        try:
            return keys[kid]
        except KeyError:
            raise MissingKeyError(f"Missing public key for kid={kid}") from None

    return _resolve


def public_key_pem(key: Ed25519PublicKey) -> str:
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def private_key_pem(key: Ed25519PrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
