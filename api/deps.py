from __future__ import annotations

import hmac
from functools import lru_cache
from pathlib import Path

from fastapi import Depends, Header, Request

from api.errors import ApiError
from mandate_rail.core.config import Config
from mandate_rail.mandate.keys import PublicKeyResolver
from mandate_rail.runtime import Runtime, build_runtime
from mandate_rail.settlement.orchestrator import SettlementOrchestrator


@lru_cache
def _repo_root() -> Path:
    # uvicorn is normally started from the repo root; fall back to the checkout this file lives in.
    here = Path(__file__).resolve()
    for p in [Path.cwd(), here.parent.parent]:
        if (p / "config" / "default.yaml").exists():
            return p
    return Path.cwd()


@lru_cache
def _load_config() -> Config:
    return Config.load(_repo_root())


def get_config(request: Request) -> Config:
    cfg = getattr(request.app.state, "config", None)
    return cfg or _load_config()


def get_runtime(request: Request) -> Runtime:
    rt = getattr(request.app.state, "runtime", None)
    if rt is None:
        rt = build_runtime(get_config(request))
        request.app.state.runtime = rt
    return rt


def get_resolver(request: Request) -> PublicKeyResolver:
    resolver = getattr(request.app.state, "resolve_public_key", None)
    return resolver or get_runtime(request).resolver()


def get_orchestrator(request: Request) -> SettlementOrchestrator:
    orch = getattr(request.app.state, "orchestrator", None)
    if orch is not None:
        return orch
    rt = get_runtime(request)
    orch = rt.orchestrator(
        signing_key=getattr(request.app.state, "signing_key", None),
        resolve_public_key=get_resolver(request),
    )
    request.app.state.orchestrator = orch
    return orch


def require_operator(
    request: Request,
    authorization: str | None = Header(default=None),
    x_mandate_agent: str | None = Header(default=None),
) -> str:
    """Authenticate the caller as the operator of this rail and return its agent id.

    The bearer token must equal ``api.auth_token``. A caller may name the agent
    it acts for in ``X-Mandate-Agent``; it must be the configured agent. With an
    empty token (insecure dev mode) only the agent check applies.
    """

    config = get_config(request)
    expected = str(config.api.auth_token or "")
    if expected:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise ApiError(code="operator.token_required", message="Bearer token required", status=401)
        if not hmac.compare_digest(token.strip(), expected):
            raise ApiError(code="operator.token_rejected", message="Bearer token rejected", status=401)

    if x_mandate_agent and x_mandate_agent != config.agent_id:
        raise ApiError(
            code="operator.agent_mismatch",
            message=f"token does not act for agent {x_mandate_agent}",
            status=403,
            agent=x_mandate_agent,
        )
    return config.agent_id


Operator = Depends(require_operator)
