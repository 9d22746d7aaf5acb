"""mandate_rail.integrity

Fail-closed checks between "a record says money moved" and "money moved".
"""

from .evidence import EvidenceChain
from .gate import GatePass, MoneyMovedGate
from .invariants import InvariantCore, TrippedBreaker
from .proof import ProofValidator, RecordWebhookLookup, RpcChainVerifier, UnavailableChainVerifier

__all__ = [
    "EvidenceChain",
    "GatePass",
    "InvariantCore",
    "MoneyMovedGate",
    "ProofValidator",
    "RecordWebhookLookup",
    "RpcChainVerifier",
    "TrippedBreaker",
    "UnavailableChainVerifier",
]
