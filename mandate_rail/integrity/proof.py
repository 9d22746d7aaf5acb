"""mandate_rail.integrity.proof

Proof-of-payment validation.

A proof is valid only if every check passes; each failure trips a named
invariant and raises. Checks, in order:

1) shape: type, numeric amount, currency, then tx_hash + recipient for
   on-chain proofs or psp_id for everything else
2) independent confirmation: chain verifier or PSP webhook record
3) event amount equals proof amount
4) recipient, when present, is on the owner allowlist
5) timestamp present, and not before the event when temporal order is
   enforced

Events without an attached proof but with a PSP, settlement or bank
reference in their metadata get a proof derived from the event itself,
validated once. The reference is confirmed like any PSP id.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, NoReturn, Protocol

from mandate_rail.core.client import RetryingClient
from mandate_rail.core.config import IntegrityConfig, RevenueEntity, WebhookEventEntity
from mandate_rail.core.exceptions import ChainVerificationError
from mandate_rail.core.time import to_iso, try_parse_dt, utc_now
from mandate_rail.integrity.invariants import InvariantCore, event_proof
from mandate_rail.records.revenue import BANK_REFERENCE_KEYS, SETTLEMENT_REFERENCE_KEYS, reference_key
from mandate_rail.store.base import Collection

logger = logging.getLogger(__name__)

ONCHAIN_TX = "onchain_tx"
DEFAULT_PROOF_TYPE = "psp_transaction_id"
REFERENCE_PROOF_TYPES = {
    **{k: "settlement_batch_id" for k in SETTLEMENT_REFERENCE_KEYS},
    **{k: "bank_reference" for k in BANK_REFERENCE_KEYS},
}

# keccak256("Transfer(address,address,uint256)")
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class WebhookLookup(Protocol):
    async def exists(self, psp_id: str) -> bool: ...


@dataclass(frozen=True, slots=True)
class ChainReceipt:
    verified: bool
    block_number: int | None = None


class ChainVerifier(Protocol):
    async def verify_transaction(
        self, tx_hash: str, amount: float, recipient: str, currency: str
    ) -> ChainReceipt: ...


class RecordWebhookLookup:
    """PSP ids count as confirmed only if a webhook event was recorded for them."""

    def __init__(self, collection: Collection, fields: WebhookEventEntity | None = None) -> None:
        self.collection = collection
        self.f = fields or WebhookEventEntity()

    async def exists(self, psp_id: str) -> bool:
        if not psp_id:
            return False
        rows = await self.collection.filter({self.f.resource_id: str(psp_id)}, limit=1)
        return bool(rows)


class UnavailableChainVerifier:
    """Default verifier. Refuses everything."""

    async def verify_transaction(self, tx_hash: str, amount: float, recipient: str, currency: str) -> ChainReceipt:
        raise ChainVerificationError("no chain verifier configured")


class RpcChainVerifier:
    """ERC-20 transfer check against an EVM JSON-RPC node."""

    def __init__(self, config: IntegrityConfig, client: RetryingClient) -> None:
        if not config.chain_rpc_url or not config.chain_token_contract:
            raise ChainVerificationError("chain_rpc_url and chain_token_contract are required")
        self.config = config
        self.client = client

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        data = await self.client.request_json("POST", self.config.chain_rpc_url, json=body, expected=dict)
        if data.get("error"):
            raise ChainVerificationError(f"{method} failed: {data['error']}")
        return data.get("result")

    def _transfer_matches(self, log: Mapping[str, Any], amount: float, recipient: str) -> bool:
        if str(log.get("address", "")).lower() != self.config.chain_token_contract.lower():
            return False
        topics = log.get("topics") or []
        if len(topics) < 3 or str(topics[0]).lower() != ERC20_TRANSFER_TOPIC:
            return False
        to = "0x" + str(topics[2])[-40:].lower()
        if to != recipient.lower():
            return False
        try:
            value = int(str(log.get("data") or "0x0"), 16) / 10**self.config.chain_token_decimals
        except ValueError:
            return False
        return abs(value - float(amount)) < self.config.chain_amount_tolerance

    async def verify_transaction(self, tx_hash: str, amount: float, recipient: str, currency: str) -> ChainReceipt:
        receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        if not isinstance(receipt, Mapping):
            raise ChainVerificationError(f"receipt not found: {tx_hash}")
        if str(receipt.get("status")) != "0x1":
            raise ChainVerificationError(f"transaction reverted: {tx_hash}")

        for log in receipt.get("logs") or []:
            if isinstance(log, Mapping) and self._transfer_matches(log, amount, recipient):
                block = receipt.get("blockNumber")
                logger.info("onchain_transfer_verified", extra={"tx_hash": tx_hash, "currency": currency})
                return ChainReceipt(verified=True, block_number=int(str(block), 16) if block else None)

        raise ChainVerificationError(f"no matching transfer of {amount} {currency} to {recipient} in {tx_hash}")


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


class ProofValidator:
    def __init__(
        self,
        *,
        invariants: InvariantCore,
        webhooks: WebhookLookup,
        chain: ChainVerifier | None = None,
        config: IntegrityConfig | None = None,
        revenue_fields: RevenueEntity | None = None,
    ) -> None:
        self.invariants = invariants
        self.webhooks = webhooks
        self.chain = chain or UnavailableChainVerifier()
        self.config = config or IntegrityConfig()
        self.f = revenue_fields or RevenueEntity()

    @property
    def owner_allowlist(self) -> Sequence[str]:
        return self.config.owner_allowlist

    def _fail(self, code: str, message: str = "", **details: Any) -> NoReturn:
        self.invariants.fail(code, message, **details)

    def derive_proof(self, event: Mapping[str, Any]) -> dict[str, Any] | None:
        meta = event.get(self.f.metadata)
        ref = reference_key(meta) if isinstance(meta, Mapping) else None
        if ref is None:
            return None
        key, ref_id = ref
        try:
            amount: Any = float(event.get(self.f.amount))
        except (TypeError, ValueError):
            amount = None
        allow = list(self.owner_allowlist)
        return {
            "type": meta.get("verification_type") or REFERENCE_PROOF_TYPES.get(key, DEFAULT_PROOF_TYPE),
            "psp_id": ref_id,
            "amount": amount,
            "currency": event.get(self.f.currency),
            "timestamp": event.get(self.f.occurred_at) or event.get("created_date") or to_iso(utc_now()),
            "recipient": meta.get("beneficiary") or (allow[0] if allow else None),
        }

    async def assert_valid(self, event: Mapping[str, Any] | None) -> dict[str, Any]:
        """Raise on the first failed check; return the proof that passed."""

        if event is None:
            self._fail("event_missing")

        proof = event_proof(event)
        if proof is None:
            derived = self.derive_proof(event)
            if derived is None:
                self._fail("proof_missing", str(event.get("id") or ""))
            proof = derived

        self._assert_shape(proof)
        if proof.get("type") == ONCHAIN_TX:
            await self._assert_onchain(proof)
        else:
            await self._assert_psp_confirmation(proof)
        self._assert_amount_match(event, proof)
        if proof.get("recipient"):
            self._assert_recipient(proof)
        self._assert_temporal(event, proof)
        return dict(proof)

    def _assert_shape(self, proof: Mapping[str, Any]) -> None:
        if not proof.get("type"):
            self._fail("proof_type_missing")
        if not _is_number(proof.get("amount")):
            self._fail("proof_amount_invalid")
        if not proof.get("currency"):
            self._fail("currency_missing")
        if proof.get("type") == ONCHAIN_TX:
            if not proof.get("tx_hash"):
                self._fail("tx_hash_missing")
            if not proof.get("recipient"):
                self._fail("recipient_missing")
        elif not proof.get("psp_id"):
            self._fail("psp_id_missing")

    async def _assert_psp_confirmation(self, proof: Mapping[str, Any]) -> None:
        psp_id = str(proof.get("psp_id"))
        if not await self.webhooks.exists(psp_id):
            self._fail("psp_confirmation_missing", psp_id, psp_id=psp_id)

    async def _assert_onchain(self, proof: Mapping[str, Any]) -> None:
        tx = str(proof.get("tx_hash"))
        try:
            await self.chain.verify_transaction(
                tx, float(proof["amount"]), str(proof.get("recipient")), str(proof.get("currency"))
            )
        except ChainVerificationError as e:
            self._fail("onchain_unverified", str(e), tx_hash=tx)

    def _assert_amount_match(self, event: Mapping[str, Any], proof: Mapping[str, Any]) -> None:
        raw = event.get(self.f.amount)
        try:
            ok = float(raw) == float(proof["amount"])
        except (TypeError, ValueError):
            ok = False
        if not ok:
            self._fail("amount_mismatch", f"event={raw} proof={proof.get('amount')}")

    def _assert_recipient(self, proof: Mapping[str, Any]) -> None:
        recipient = str(proof.get("recipient"))
        if recipient not in self.owner_allowlist:
            self._fail("recipient_not_authorized", recipient, recipient=recipient)

    def _assert_temporal(self, event: Mapping[str, Any], proof: Mapping[str, Any]) -> None:
        if not proof.get("timestamp"):
            self._fail("proof_timestamp_missing")
        if not self.config.enforce_temporal_order:
            return
        pt = try_parse_dt(proof.get("timestamp"))
        et = try_parse_dt(event.get(self.f.occurred_at) or event.get("created_date"))
        if pt is None:
            self._fail("proof_timestamp_missing", "unparseable")
        if et is not None and pt < et:
            self._fail("proof_before_event", f"proof={proof.get('timestamp')} event={to_iso(et)}")


__all__ = [
    "ChainReceipt",
    "ChainVerifier",
    "ProofValidator",
    "RecordWebhookLookup",
    "RpcChainVerifier",
    "UnavailableChainVerifier",
    "WebhookLookup",
]
