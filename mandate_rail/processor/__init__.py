"""mandate_rail.processor

Payment processor adapters.
"""

from .paypal import InMemoryPayoutProcessor, PayoutProcessor, PayPalClient

__all__ = ["InMemoryPayoutProcessor", "PayPalClient", "PayoutProcessor"]
