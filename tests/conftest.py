from __future__ import annotations

import asyncio
import shutil
import sys
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

# uv/pytest may run without installing the project; ensure repo root is importable.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from mandate_rail.core.config import Config  # noqa: E402
from mandate_rail.mandate.keys import PublicKeyResolver, static_resolver  # noqa: E402
from mandate_rail.store.base import (  # noqa: E402
    Collections,
    DuplicateRecordError,
    WriteConflictError,
    matches_filter,
)
from mandate_rail.store.local import MemoryStore  # noqa: E402

TEST_KID = "ap2-test"


class NonAtomicStore(MemoryStore):
    """Honors ``unique_on`` and ``expect`` the way the remote store does: check, await, write."""

    def __init__(self) -> None:
        super().__init__(interleave=True)

    async def create(self, entity, data, *, unique_on=None):
        await self._yield()
        if unique_on:
            unique_key = {f: data.get(f) for f in unique_on}
            if any(matches_filter(r, unique_key) for r in self._bucket(entity)):
                raise DuplicateRecordError(f"{entity}: duplicate on {sorted(unique_key)}")
        await asyncio.sleep(0)
        return await super().create(entity, data)

    async def update(self, entity, record_id, patch, *, expect=None):
        await self._yield()
        if expect is not None:
            current = [r for r in self._bucket(entity) if r.get("id") == record_id]
            if current and not matches_filter(current[0], expect):
                raise WriteConflictError(f"{entity} id={record_id} changed underneath")
        await asyncio.sleep(0)
        return await super().update(entity, record_id, patch)


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture()
def test_config(temp_dir: Path) -> Config:
    """Config fixture with every on-disk path pointed into a temp directory."""

    repo_root = Path(__file__).resolve().parents[1]
    cfg_src = repo_root / "config" / "default.yaml"
    cfg_dst_dir = temp_dir / "config"
    cfg_dst_dir.mkdir(parents=True, exist_ok=True)

    # copy default + presets
    shutil.copy2(cfg_src, cfg_dst_dir / "default.yaml")
    shutil.copytree(repo_root / "config" / "presets", cfg_dst_dir / "presets")

    c = Config.from_yaml(cfg_dst_dir / "default.yaml")
    data = temp_dir / "data"
    return c.model_copy(
        update={
            "data_dir": data,
            "config_dir": cfg_dst_dir,
            "mandate": c.mandate.model_copy(update={"kid": TEST_KID}),
            "posp": c.posp.model_copy(
                update={"receipts_dir": temp_dir / "receipts", "proofs_dir": temp_dir / "posp-proofs"}
            ),
            "integrity": c.integrity.model_copy(update={"evidence_chain_path": data / "evidence-chain.json"}),
            "store": c.store.model_copy(update={"offline_path": data / "offline-store.json"}),
            "dedupe": c.dedupe.model_copy(update={"path": data / "dedupe-cache.json"}),
            "autonomous": c.autonomous.model_copy(update={"state_path": data / "autonomous-state.json"}),
        }
    )


@pytest.fixture()
def signing_key() -> Ed25519PrivateKey:
    return Ed25519PrivateKey.generate()


@pytest.fixture()
def resolver(signing_key: Ed25519PrivateKey) -> PublicKeyResolver:
    return static_resolver({TEST_KID: signing_key.public_key()})


@pytest.fixture()
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def collections(memory_store: MemoryStore, test_config: Config) -> Collections:
    return Collections(memory_store, test_config.entities)
