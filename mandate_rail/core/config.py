"""mandate_rail.core.config

Three config surfaces only:
1) `config/default.yaml` + `config/presets/*.yaml` (+ `config/user.yaml`)
2) Environment variables (secrets and overrides)
3) Nothing else. Everything is derived.

Entity field maps are resolved and validated here, once. A typo in a
column name is a startup failure, not a 3am failure.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from mandate_rail.core.exceptions import ConfigError


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


# -----------------
# Entity field maps
# -----------------


class _EntityMap(BaseModel):
    """Logical field -> store column. Unknown keys are rejected."""

    entity_name: str

    model_config = {"extra": "forbid", "frozen": True}

    @model_validator(mode="after")
    def columns_must_be_named(self) -> _EntityMap:
        for name, value in self.model_dump().items():
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{type(self).__name__}.{name} must be a non-empty column name")
        return self


class MandateEntity(_EntityMap):
    entity_name: str = "AP2Mandate"
    type: str = "type"
    mandate_id: str = "mandate_id"
    payload: str = "payload"
    payload_hash: str = "payload_hash"
    signature: str = "signature"
    kid: str = "kid"
    iss: str = "iss"
    sub: str = "sub"
    aud: str = "aud"
    iat: str = "iat"
    exp: str = "exp"
    prev_hash: str = "prev_hash"
    status: str = "status"
    verification: str = "verification"


class LeaseEntity(_EntityMap):
    entity_name: str = "WorkLease"
    key: str = "key"
    holder: str = "holder"
    claimed_at: str = "claimed_at"
    expires_at: str = "expires_at"
    status: str = "status"
    meta: str = "meta"


class PayoutRequestEntity(_EntityMap):
    entity_name: str = "PayoutRequest"
    amount: str = "amount"
    currency: str = "currency"
    status: str = "status"
    source: str = "source"
    external_id: str = "external_id"
    occurred_at: str = "occurred_at"
    destination_summary: str = "destination_summary"
    metadata: str = "metadata"


class EarningEntity(_EntityMap):
    entity_name: str = "Earning"
    earning_id: str = "earning_id"
    amount: str = "amount"
    currency: str = "currency"
    occurred_at: str = "occurred_at"
    source: str = "source"
    beneficiary: str = "beneficiary"
    status: str = "status"
    settlement_id: str = "settlement_id"
    metadata: str = "metadata"


class RevenueEntity(_EntityMap):
    entity_name: str = "RevenueEvent"
    amount: str = "amount"
    currency: str = "currency"
    occurred_at: str = "occurred_at"
    source: str = "source"
    external_id: str = "event_id"
    status: str = "status"
    event_hash: str = "event_hash"
    metadata: str = "metadata"


class SettlementItemEntity(_EntityMap):
    entity_name: str = "SettlementItem"
    revenue_external_id: str = "revenue_external_id"
    payment_mandate_id: str = "payment_mandate_id"
    occurred_at: str = "occurred_at"
    amount: str = "amount"
    currency: str = "currency"
    meta: str = "meta"


class PayoutBatchEntity(_EntityMap):
    entity_name: str = "PayoutBatch"
    batch_id: str = "batch_id"
    status: str = "status"
    total_amount: str = "total_amount"
    currency: str = "currency"
    approved_at: str = "approved_at"
    submitted_at: str = "submitted_at"
    processed_at: str = "processed_at"
    earning_ids: str = "earning_ids"
    notes: str = "notes"


class PayoutItemEntity(_EntityMap):
    entity_name: str = "PayoutItem"
    item_id: str = "item_id"
    batch_id: str = "batch_id"
    earning_id: str = "earning_id"
    recipient: str = "recipient"
    recipient_type: str = "recipient_type"
    amount: str = "amount"
    currency: str = "currency"
    status: str = "status"
    processed_at: str = "processed_at"
    transaction_id: str = "transaction_id"
    revenue_event_id: str = "revenue_event_id"


class WebhookEventEntity(_EntityMap):
    entity_name: str = "PayPalWebhookEvent"
    resource_id: str = "resource_id"
    event_type: str = "event_type"


class EntitiesConfig(BaseModel):
    """Registry of every entity the system may touch."""

    mandate: MandateEntity = Field(default_factory=MandateEntity)
    lease: LeaseEntity = Field(default_factory=LeaseEntity)
    payout_request: PayoutRequestEntity = Field(default_factory=PayoutRequestEntity)
    earning: EarningEntity = Field(default_factory=EarningEntity)
    revenue: RevenueEntity = Field(default_factory=RevenueEntity)
    settlement_item: SettlementItemEntity = Field(default_factory=SettlementItemEntity)
    payout_batch: PayoutBatchEntity = Field(default_factory=PayoutBatchEntity)
    payout_item: PayoutItemEntity = Field(default_factory=PayoutItemEntity)
    webhook_event: WebhookEventEntity = Field(default_factory=WebhookEventEntity)

    model_config = {"extra": "forbid"}

    def entity_names(self) -> set[str]:
        return {getattr(self, f).entity_name for f in type(self).model_fields}


# -----------------
# Component configs
# -----------------


class PartiesConfig(BaseModel):
    """DIDs of the four protocol parties."""

    agent: str = "did:swarm:sa:orchestrator"
    credential_provider: str = "did:swarm:cp:base44"
    merchant: str = "did:swarm:me:base44"
    processor: str = "did:swarm:mpp:bank_rails"


class MandateConfig(BaseModel):
    kid: str = "ap2-default"
    clock_skew_ms: int = 5 * 60 * 1000
    quote_ttl_ms: int = 30 * 60 * 1000
    payment_ttl_ms: int = 60 * 60 * 1000
    parties: PartiesConfig = Field(default_factory=PartiesConfig)

    @field_validator("clock_skew_ms", "quote_ttl_ms", "payment_ttl_ms")
    @classmethod
    def must_be_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("durations must be >= 0")
        return v


class PospConfig(BaseModel):
    enabled: bool = True
    window_days: int = 30
    min_score: int = 5
    min_tx: int = 1
    min_receipt_amount_usd: float = 1.0
    receipts_dir: Path = Path("exports/receipts")
    proofs_dir: Path = Path("exports/posp-proofs")


class SettlementConfig(BaseModel):
    lease_ttl_ms: int = 600_000
    item_limit: int = 50
    revenue_scan_limit: int = 200
    use_settlement_index: bool = True
    destination: dict[str, Any] = Field(default_factory=dict)
    payout_source: str = "ap2"
    settlement_method: str = "bank_wire"

    @field_validator("lease_ttl_ms")
    @classmethod
    def lease_ttl_floor(cls, v: int) -> int:
        return max(1000, int(v))


class IntegrityConfig(BaseModel):
    evidence_chain_path: Path = Path("data/evidence-chain.json")
    owner_allowlist: list[str] = Field(default_factory=list)
    enforce_temporal_order: bool = False
    money_gate_allowed_statuses: list[str] = Field(default_factory=list)
    money_gate_reject_settled: bool = False
    chain_rpc_url: str = ""
    chain_token_contract: str = ""
    chain_token_decimals: int = 18
    chain_amount_tolerance: float = 0.1


class ProcessorConfig(BaseModel):
    base_url: str = "https://api-m.paypal.com"
    timeout_s: float = 10.0
    max_attempts: int = 3
    base_delay_ms: int = 250
    backoff_factor: float = 2.0
    breaker_failure_threshold: int = 5
    breaker_reset_timeout_ms: int = 60_000
    breaker_window_ms: int = 60_000


class StoreConfig(BaseModel):
    mode: Literal["online", "offline", "auto"] = "auto"
    base_url: str = "https://app.base44.com/api"
    app_id: str = ""
    api_key: str = ""
    offline_path: Path = Path(".base44-offline-store.json")
    health_entity: str = "RevenueEvent"


class DedupeConfig(BaseModel):
    path: Path = Path("data/dedupe-cache.json")
    ttl_ms: int = 30 * 60 * 1000
    max_entries: int = 5000
    flush_interval_ms: int = 5000


class PayoutWindowConfig(BaseModel):
    start_hour_utc: int = 0
    end_hour_utc: int = 0

    @field_validator("start_hour_utc", "end_hour_utc")
    @classmethod
    def hour_in_range(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError("hours must be within 0..23")
        return v


class AutoApproveConfig(BaseModel):
    enabled: bool = False
    pending_age_minutes: int = 120
    max_batch_amount: float | None = None
    two_fa_threshold: float = 500.0


class PayoutConfig(BaseModel):
    dry_run: bool = True
    min_available_balance: float = 0.0
    window_utc: PayoutWindowConfig = Field(default_factory=PayoutWindowConfig)
    auto_approve: AutoApproveConfig = Field(default_factory=AutoApproveConfig)
    settlement_id: str | None = None
    beneficiary: str | None = None
    recipient_type: str | None = None


class TasksConfig(BaseModel):
    health: bool = True
    available_balance: bool = True
    report_pending_approval: bool = True
    report_stuck_payouts: bool = True
    create_payout_batches: bool = False
    auto_approve_payout_batches: bool = False
    auto_submit_payout_batches: bool = False
    reconcile_payout_batches: bool = False


class OfflineConfig(BaseModel):
    enabled: bool = False
    auto: bool = True


class AutonomousConfig(BaseModel):
    interval_ms: int = 60_000
    backoff_max_ms: int = 300_000
    state_path: Path = Path(".autonomous-state.json")
    stuck_batch_hours: float = 24.0
    stuck_item_hours: float = 24.0
    require_processor_health: bool = False
    alert_cooldown_ms: int = 15 * 60 * 1000
    offline: OfflineConfig = Field(default_factory=OfflineConfig)
    payout: PayoutConfig = Field(default_factory=PayoutConfig)
    tasks: TasksConfig = Field(default_factory=TasksConfig)

    @field_validator("interval_ms")
    @classmethod
    def interval_floor(cls, v: int) -> int:
        if v < 1000:
            raise ValueError("interval_ms must be >= 1000")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 5060
    auth_token: str = ""
    cors_origins: list[str] = Field(default_factory=list)


class Config(BaseSettings):
    """Root configuration. Single source of truth."""

    # Paths
    data_dir: Path = Path("data")
    config_dir: Path = Path("config")

    # Preset selection
    preset: Literal["sandbox", "production", "custom"] = "sandbox"

    agent_id: str = "orchestrator"

    mandate: MandateConfig = Field(default_factory=MandateConfig)
    posp: PospConfig = Field(default_factory=PospConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    integrity: IntegrityConfig = Field(default_factory=IntegrityConfig)
    processor: ProcessorConfig = Field(default_factory=ProcessorConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    entities: EntitiesConfig = Field(default_factory=EntitiesConfig)
    dedupe: DedupeConfig = Field(default_factory=DedupeConfig)
    autonomous: AutonomousConfig = Field(default_factory=AutonomousConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = {"env_prefix": "MANDATE_RAIL_", "env_nested_delimiter": "__"}

    @property
    def journal_path(self) -> Path:
        return self.data_dir / "journal.db"

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        raw = yaml.safe_load(path.read_text()) or {}

        preset_name = raw.get("preset", "sandbox")
        preset_path = path.parent / "presets" / f"{preset_name}.yaml"
        if preset_path.exists():
            preset_data = yaml.safe_load(preset_path.read_text()) or {}
            raw = _deep_merge(preset_data, raw)

        try:
            return cls(**raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid config {path}: {e}") from e

    @classmethod
    def from_repo_defaults(cls, repo_root: Path | None = None) -> Config:
        root = repo_root or Path.cwd()
        return cls.from_yaml(root / "config" / "default.yaml")

    @classmethod
    def load(cls, repo_root: Path | None = None) -> Config:
        """`config/user.yaml` if present, else repo defaults."""

        root = repo_root or Path.cwd()
        user_path = root / "config" / "user.yaml"
        if user_path.exists():
            return cls.from_yaml(user_path)
        return cls.from_repo_defaults(root)
