"""mandate_rail.integrity.evidence

Hash-chained evidence blocks binding a ledger event to its proof.

A JSON array on disk, rewritten atomically on every append. Single writer,
linear chain. It makes after-the-fact edits to stored proofs detectable;
it is not a consensus protocol.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn

from mandate_rail.core.codec import sha256_hex, stable_stringify
from mandate_rail.core.exceptions import InvariantViolationError
from mandate_rail.core.files import atomic_write_json, read_json
from mandate_rail.core.journal import Journal, JournalEventType
from mandate_rail.core.time import to_iso, utc_now
from mandate_rail.integrity.invariants import InvariantCore

logger = logging.getLogger(__name__)

GENESIS = "GENESIS"

Block = dict[str, Any]


def block_hash(block: Mapping[str, Any]) -> str:
    content = {
        "eventId": block.get("eventId"),
        "proof": block.get("proof"),
        "prevHash": block.get("prevHash"),
        "timestamp": block.get("timestamp"),
    }
    return sha256_hex(stable_stringify(content))


class EvidenceChain:
    def __init__(
        self,
        path: str | Path,
        *,
        invariants: InvariantCore | None = None,
        journal: Journal | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.path = Path(path)
        self.invariants = invariants
        self.journal = journal
        self._clock = clock

    def blocks(self) -> list[Block]:
        data = read_json(self.path, default=[])
        if not isinstance(data, list):
            raise ValueError(f"evidence chain at {self.path} is not a JSON array")
        return data

    def add_block(self, event_id: str, proof: Mapping[str, Any]) -> Block:
        chain = self.blocks()
        prev = chain[-1].get("hash") if chain else GENESIS
        block: Block = {
            "eventId": str(event_id),
            "proof": dict(proof),
            "prevHash": prev or GENESIS,
            "timestamp": to_iso(self._clock()),
        }
        block["hash"] = block_hash(block)
        chain.append(block)
        atomic_write_json(self.path, chain, indent=2)

        logger.info("evidence_block_added", extra={"event_id": event_id, "hash": block["hash"]})
        if self.journal is not None:
            self.journal.append(
                event_type=JournalEventType.EVIDENCE_BLOCK_V1,
                payload={"eventId": block["eventId"], "hash": block["hash"], "prevHash": block["prevHash"]},
                source="integrity.evidence",
            )
        return block

    def block_for(self, event_id: str) -> Block | None:
        """Most recent block for ``event_id``."""

        for block in reversed(self.blocks()):
            if block.get("eventId") == str(event_id):
                return block
        return None

    def _fail(self, code: str, event_id: str) -> NoReturn:
        if self.invariants is not None:
            self.invariants.fail(code, str(event_id), event_id=str(event_id))
        raise InvariantViolationError(code, str(event_id), event_id=str(event_id))

    def assert_event_bound(self, event_id: str) -> Block:
        block = self.block_for(event_id)
        if block is None:
            self._fail("evidence_block_missing", event_id)
        if block_hash(block) != block.get("hash"):
            self._fail("evidence_chain_tampered", event_id)
        return block

    def verify_chain(self) -> bool:
        prev = GENESIS
        for block in self.blocks():
            if block.get("prevHash") != prev:
                return False
            if block_hash(block) != block.get("hash"):
                return False
            prev = str(block["hash"])
        return True
