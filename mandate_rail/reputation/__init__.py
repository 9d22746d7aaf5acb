"""mandate_rail.reputation

PoSP: earn the right to start new settlement work.
"""

from .posp import PospCheck, PospProof, ReputationGate, calculate_posp, enforce_posp, write_posp_proof

__all__ = ["PospCheck", "PospProof", "ReputationGate", "calculate_posp", "enforce_posp", "write_posp_proof"]
