"""mandate_rail.concurrency

Cross-process safety: leases, idempotent creates, breakers.
"""
