"""Content-addressed storage collaborators.

``pin(data, name, keyvalues) -> cid``; retrieval is ``GET <gateway>/<cid>``.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

import httpx

from .config import DEFAULT_GATEWAY_URL
from .errors import IMP_E_UPSTREAM, impact_error
from .retry import request_json

logger = logging.getLogger("impact_gateway.storage")

PINATA_URL = "https://api.pinata.cloud"


class ContentStore(Protocol):
    async def pin(self, data: bytes, name: str, keyvalues: Dict[str, str]) -> str:
        ...

    def gateway_url(self, cid: str) -> str:
        ...


def raw_cid_v1(data: bytes) -> str:
    """CIDv1 (raw codec, sha2-256 multihash), multibase base32 lower."""
    digest = hashlib.sha256(data).digest()
    prefix = bytes([0x01, 0x55, 0x12, 0x20])
    return "b" + base64.b32encode(prefix + digest).decode("ascii").lower().rstrip("=")


class LocalContentStore:
    """In-process content store with sha256-derived identifiers.

    With ``root`` set, pinned objects and their metadata are written to disk.
    """

    def __init__(self, root: Optional[str] = None, *, gateway: str = DEFAULT_GATEWAY_URL):
        self.root = Path(root) if root else None
        self.gateway = gateway.rstrip("/")
        self._lock = threading.Lock()
        self._objects: Dict[str, bytes] = {}
        self._meta: Dict[str, Dict[str, str]] = {}
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)

    async def pin(self, data: bytes, name: str, keyvalues: Dict[str, str]) -> str:
        cid = raw_cid_v1(data)
        meta = {"name": name, **{str(k): str(v) for k, v in keyvalues.items()}}
        with self._lock:
            self._objects[cid] = bytes(data)
            self._meta[cid] = meta
        if self.root is not None:
            (self.root / cid).write_bytes(data)
            (self.root / f"{cid}.meta.json").write_text(json.dumps(meta, sort_keys=True), encoding="utf-8")
        logger.debug("pinned %s (%d bytes) as %s", name, len(data), cid)
        return cid

    def get(self, cid: str) -> Optional[bytes]:
        with self._lock:
            data = self._objects.get(cid)
        if data is None and self.root is not None and (self.root / cid).is_file():
            data = (self.root / cid).read_bytes()
        return data

    def metadata(self, cid: str) -> Optional[Dict[str, str]]:
        with self._lock:
            return dict(self._meta[cid]) if cid in self._meta else None

    def gateway_url(self, cid: str) -> str:
        return f"{self.gateway}/{cid}"


class PinataContentStore:
    """Pinata-style pinning service (pinFileToIPFS)."""

    def __init__(
        self,
        jwt: str,
        *,
        base_url: str = PINATA_URL,
        gateway: str = DEFAULT_GATEWAY_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.gateway = gateway.rstrip("/")
        self._headers = {"Authorization": f"Bearer {jwt}"}
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def pin(self, data: bytes, name: str, keyvalues: Dict[str, str]) -> str:
        metadata = {"name": name, "keyvalues": {str(k): str(v) for k, v in keyvalues.items()}}
        result = await request_json(
            self._client,
            "POST",
            f"{self.base_url}/pinning/pinFileToIPFS",
            op="storage.pin",
            headers=self._headers,
            files={"file": (name, data)},
            data={"pinataMetadata": json.dumps(metadata)},
        )
        cid = result.get("IpfsHash")
        if not cid:
            raise impact_error(IMP_E_UPSTREAM, "pinning service returned no IpfsHash", http_status=502)
        return str(cid)

    def gateway_url(self, cid: str) -> str:
        return f"{self.gateway}/{cid}"
