"""mandate_rail.mandate

Intent, Quote and Payment mandates: build, sign, verify, chain.
"""

from .keys import PublicKeyResolver, env_public_key_resolver, private_key_from_env, static_resolver
from .models import IntentPayload, MandateEnvelope, MandateKind, PaymentPayload, QuotePayload
from .signer import VerificationResult, build_chain_hash, sign_mandate, verify_chain_link, verify_mandate

__all__ = [
    "IntentPayload",
    "MandateEnvelope",
    "MandateKind",
    "PaymentPayload",
    "PublicKeyResolver",
    "QuotePayload",
    "VerificationResult",
    "build_chain_hash",
    "env_public_key_resolver",
    "private_key_from_env",
    "sign_mandate",
    "static_resolver",
    "verify_chain_link",
    "verify_mandate",
]
