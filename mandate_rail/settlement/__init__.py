"""mandate_rail.settlement

Intent → Quote → Payment → PayoutRequest.
"""

from .orchestrator import SettlementOrchestrator, SettlementReason, SettlementResult, SettlementState

__all__ = ["SettlementOrchestrator", "SettlementReason", "SettlementResult", "SettlementState"]
