"""Impact Gateway package.

Turns field evidence (geotagged photos) into funding proposals on a
stake-gated governance contract:

- canonical image normalization and metadata extraction (Pillow)
- content hashing, operator signatures and attestation tasks (Ed25519)
- concurrent context enrichment (place, weather, news)
- deterministic impact scoring and mechanism selection
- an exactly-once dedup ledger (SQLite)
- content-addressed publication and proposal submission

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from impact_gateway import EvidencePipeline, build_runtime, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except Exception:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "EvidencePipeline",
    "IntakeScheduler",
    "DedupLedger",
    "ImpactDAO",
    "LocalLedger",
    "ImpactSettings",
    "build_runtime",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "EvidencePipeline": ("impact_gateway.pipeline", "EvidencePipeline"),
    "IntakeScheduler": ("impact_gateway.scheduler", "IntakeScheduler"),
    "DedupLedger": ("impact_gateway.ledger", "DedupLedger"),
    "ImpactDAO": ("impact_gateway.governance", "ImpactDAO"),
    "LocalLedger": ("impact_gateway.governance", "LocalLedger"),
    "ImpactSettings": ("impact_gateway.config", "ImpactSettings"),
    "build_runtime": ("impact_gateway.runtime", "build_runtime"),
    "create_app": ("impact_gateway.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'impact_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
