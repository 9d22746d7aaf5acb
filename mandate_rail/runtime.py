"""mandate_rail.runtime

Wiring. Builds the store, journal, caches and integrity layer from one
`Config` so the CLI, the API and the control loop share a single shape.

Secrets (signing key, processor credentials) are resolved lazily: a
``verify`` call should not need a private key.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from mandate_rail.concurrency.circuit_breaker import BreakerRegistry
from mandate_rail.control.tasks import ControlTasks
from mandate_rail.core.client import RetryingClient
from mandate_rail.core.config import Config
from mandate_rail.core.dedupe import DedupeStore
from mandate_rail.core.journal import Journal
from mandate_rail.integrity.evidence import EvidenceChain
from mandate_rail.integrity.gate import MoneyMovedGate
from mandate_rail.integrity.invariants import InvariantCore
from mandate_rail.integrity.proof import ChainVerifier, ProofValidator, RecordWebhookLookup, RpcChainVerifier
from mandate_rail.mandate.keys import PublicKeyResolver, env_public_key_resolver, private_key_from_env
from mandate_rail.processor.paypal import (
    CLIENT_ID_ENV,
    CLIENT_SECRET_ENV,
    PayoutProcessor,
    PayPalClient,
    is_placeholder,
)
from mandate_rail.reputation.posp import ReputationGate
from mandate_rail.settlement.orchestrator import SettlementOrchestrator
from mandate_rail.store.base import Collections, RecordStore
from mandate_rail.store.factory import open_store

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: Config
    store: RecordStore
    collections: Collections
    journal: Journal
    dedupe: DedupeStore
    breakers: BreakerRegistry
    http: RetryingClient
    invariants: InvariantCore
    evidence: EvidenceChain
    env: Mapping[str, str] = field(default_factory=lambda: os.environ)
    _clients: list[RetryingClient] = field(default_factory=list)

    def resolver(self) -> PublicKeyResolver:
        return env_public_key_resolver(self.env)

    def signing_key(self) -> Ed25519PrivateKey:
        return private_key_from_env(self.env)

    def chain_verifier(self) -> ChainVerifier | None:
        if not self.config.integrity.chain_rpc_url:
            return None
        return RpcChainVerifier(self.config.integrity, self.http)

    def money_gate(self) -> MoneyMovedGate:
        ents = self.config.entities
        validator = ProofValidator(
            invariants=self.invariants,
            webhooks=RecordWebhookLookup(self.collections.get(ents.webhook_event.entity_name), ents.webhook_event),
            chain=self.chain_verifier(),
            config=self.config.integrity,
            revenue_fields=ents.revenue,
        )
        return MoneyMovedGate(
            validator=validator, evidence=self.evidence, config=self.config.integrity, revenue_fields=ents.revenue
        )

    def orchestrator(
        self,
        *,
        signing_key: Ed25519PrivateKey | None = None,
        resolve_public_key: PublicKeyResolver | None = None,
    ) -> SettlementOrchestrator:
        return SettlementOrchestrator(
            self.config,
            self.collections,
            signing_key=signing_key or self.signing_key(),
            resolve_public_key=resolve_public_key or self.resolver(),
            journal=self.journal,
            dedupe=self.dedupe,
            reputation=ReputationGate(self.config.posp),
        )

    def processor(self) -> PayoutProcessor | None:
        """PayPal client when credentials are present, else None."""

        if is_placeholder(self.env.get(CLIENT_ID_ENV)) or is_placeholder(self.env.get(CLIENT_SECRET_ENV)):
            logger.info("processor_not_configured")
            return None
        client = RetryingClient(self.config.processor, breaker=self.breakers.get("paypal"))
        self._clients.append(client)
        return PayPalClient.from_env(self.config.processor, client, self.env)

    def control_tasks(self, processor: PayoutProcessor | None = None) -> ControlTasks:
        """Control tasks with reconciliation gated on the money-moved gate."""

        return ControlTasks(
            self.config,
            self.collections,
            processor=processor if processor is not None else self.processor(),
            money_gate=self.money_gate(),
        )

    async def aclose(self) -> None:
        self.dedupe.flush()
        for c in (self.http, *self._clients):
            await c.aclose()
        self.journal.close()


def build_runtime(
    config: Config,
    *,
    store: RecordStore | None = None,
    env: Mapping[str, str] | None = None,
) -> Runtime:
    breakers = BreakerRegistry(defaults=config.processor)
    http = RetryingClient(config.processor, breaker=breakers.get("store"))
    if store is None:
        store = open_store(config, breakers=breakers, client=http)
    journal = Journal(config.journal_path)
    invariants = InvariantCore(journal=journal, config=config.integrity, revenue_fields=config.entities.revenue)
    return Runtime(
        config=config,
        store=store,
        collections=Collections(store, config.entities),
        journal=journal,
        dedupe=DedupeStore.from_config(config.dedupe),
        breakers=breakers,
        http=http,
        invariants=invariants,
        evidence=EvidenceChain(config.integrity.evidence_chain_path, invariants=invariants, journal=journal),
        env=os.environ if env is None else env,
    )
