"""mandate_rail: signed mandates in, verified settlements out.

Nothing moves until the proof says it moved.
"""

from __future__ import annotations

__all__ = [
    "__version__",
    "MANDATE_TYPE",
    "MANDATE_ALG",
]

__version__ = "1.0.0"

MANDATE_TYPE = "AP2-MANDATE"
MANDATE_ALG = "Ed25519"
