"""mandate_rail.reputation.posp

Proof of settlement performance (PoSP).

A rate gate on new settlement work. The score is recomputed from the
receipts in a rolling window on every attempt:

    score = floor(tx_count + revenue_total_usd / 100 + unique_payers * 2 + 0.5)

Receipts are JSON files in ``posp.receipts_dir``. The proof written to
``posp.proofs_dir`` is an audit artifact, never read back as authority.
"""

from __future__ import annotations

import json
import math
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from mandate_rail.core.codec import sha256_hex, stable_stringify
from mandate_rail.core.config import PospConfig
from mandate_rail.core.files import atomic_write_json
from mandate_rail.core.time import to_epoch_ms, to_iso, try_parse_dt, utc_now

logger = logging.getLogger(__name__)

PROOF_TYPE = "posp.proof"
SAMPLE_SIZE = 5


@dataclass(frozen=True, slots=True)
class PospProof:
    agent_id: str
    created_at: str
    score: int
    basis: dict[str, Any]
    proof_hash: str

    @property
    def tx_count(self) -> int:
        return int(self.basis.get("tx_count") or 0)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": PROOF_TYPE,
            "created_at": self.created_at,
            "agent_id": self.agent_id,
            "score": self.score,
            "basis": self.basis,
            "proof_hash": self.proof_hash,
        }


@dataclass(frozen=True, slots=True)
class PospCheck:
    ok: bool
    min_score: int
    min_tx: int
    score: int
    tx_count: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "minScore": self.min_score,
            "minTx": self.min_tx,
            "score": self.score,
            "txCount": self.tx_count,
        }


def load_receipts(receipts_dir: Path) -> list[dict[str, Any]]:
    if not receipts_dir.is_dir():
        return []
    out: list[dict[str, Any]] = []
    for p in sorted(receipts_dir.glob("*.json")):
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("posp_receipt_unreadable", extra={"path": str(p), "error": str(e)})
            continue
        if isinstance(data, dict):
            out.append(data)
    return out


def _num(v: Any) -> float:
    try:
        return float(v or 0)
    except (TypeError, ValueError):
        return 0.0


def _within(receipt: Mapping[str, Any], now: datetime, window_days: int) -> bool:
    ts = try_parse_dt(receipt.get("created_at"))
    return ts is not None and now - ts <= timedelta(days=window_days)


def calculate_posp(
    *,
    agent_id: str = "local",
    window_days: int = 30,
    min_receipt_amount: float = 1.0,
    receipts: list[dict[str, Any]] | None = None,
    receipts_dir: Path | None = None,
    now: datetime | None = None,
) -> PospProof:
    ts = now or utc_now()
    rows = receipts if receipts is not None else load_receipts(receipts_dir or PospConfig().receipts_dir)
    window = [
        r for r in rows if _within(r, ts, window_days) and _num(r.get("amount_total_usd")) >= min_receipt_amount
    ]

    tx_count = int(sum(_num(r.get("count")) for r in window))
    revenue = sum(_num(r.get("amount_total_usd")) for r in window)
    payers: list[str] = []
    for r in window:
        payer = r.get("payer")
        email = str(payer.get("email") or "").strip().lower() if isinstance(payer, Mapping) else ""
        if email and email not in payers:
            payers.append(email)

    # half up: 6.5 scores 7
    score = math.floor(tx_count + revenue / 100 + len(payers) * 2 + 0.5)

    basis = {
        "agent_id": agent_id,
        "window_days": window_days,
        "tx_count": tx_count,
        "revenue_total_usd": round(revenue, 2),
        "unique_payers_count": len(payers),
        "payer_emails_sample": payers[:SAMPLE_SIZE],
        "receipts_sample": [
            {
                "batch_id": r.get("batch_id"),
                "amount_total_usd": r.get("amount_total_usd"),
                "created_at": r.get("created_at"),
                "status": r.get("status"),
            }
            for r in window[:SAMPLE_SIZE]
        ],
    }
    return PospProof(
        agent_id=agent_id,
        created_at=to_iso(ts),
        score=int(score),
        basis=basis,
        proof_hash=sha256_hex(stable_stringify(basis)),
    )


def enforce_posp(proof: PospProof, *, min_score: int = 5, min_tx: int = 1) -> PospCheck:
    ok = proof.score >= min_score and proof.tx_count >= min_tx
    return PospCheck(ok=ok, min_score=min_score, min_tx=min_tx, score=proof.score, tx_count=proof.tx_count)


def write_posp_proof(
    proof: PospProof,
    *,
    proofs_dir: Path | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Path:
    out_dir = proofs_dir or PospConfig().proofs_dir
    path = out_dir / f"posp_proof_{proof.agent_id}_{to_epoch_ms(clock())}.json"
    atomic_write_json(path, proof.as_dict(), indent=2)
    logger.info("posp_proof_written", extra={"path": str(path), "score": proof.score})
    return path


class ReputationGate:
    """Config-bound calculate + enforce + write."""

    def __init__(self, config: PospConfig) -> None:
        self.config = config

    def evaluate(self, agent_id: str, *, now: datetime | None = None) -> tuple[PospProof, PospCheck]:
        proof = calculate_posp(
            agent_id=agent_id,
            window_days=self.config.window_days,
            min_receipt_amount=self.config.min_receipt_amount_usd,
            receipts_dir=self.config.receipts_dir,
            now=now,
        )
        return proof, enforce_posp(proof, min_score=self.config.min_score, min_tx=self.config.min_tx)

    def write(self, proof: PospProof) -> Path:
        return write_posp_proof(proof, proofs_dir=self.config.proofs_dir)
