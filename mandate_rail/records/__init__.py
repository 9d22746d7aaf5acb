"""mandate_rail.records

Idempotent writers, one per entity. Each dedupes on its external key and
recovers create races by re-reading.
"""

from .earnings import Earning, EarningWriter
from .mandates import MandateStore
from .payouts import PayoutRequest, PayoutRequestWriter
from .revenue import RevenueEvent, RevenueLedger, is_hallucination, reference_id, reference_key
from .settlement_index import SettlementIndex

__all__ = [
    "Earning",
    "EarningWriter",
    "MandateStore",
    "PayoutRequest",
    "PayoutRequestWriter",
    "RevenueEvent",
    "RevenueLedger",
    "SettlementIndex",
    "is_hallucination",
    "reference_id",
    "reference_key",
]
