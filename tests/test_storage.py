import json

import httpx
import pytest

from impact_gateway.errors import AccessDenied
from impact_gateway.storage import LocalContentStore, PinataContentStore, raw_cid_v1


def test_raw_cid_is_content_derived():
    cid = raw_cid_v1(b"hello")
    assert cid.startswith("bafkrei")
    assert cid == raw_cid_v1(b"hello")
    assert cid != raw_cid_v1(b"hello!")


@pytest.mark.asyncio
async def test_local_store_pins_and_serves(tmp_path):
    store = LocalContentStore(str(tmp_path / "pins"), gateway="https://ipfs.example/ipfs/")
    cid = await store.pin(b"payload", "evidence.jpg", {"content_hash": "abc"})

    assert cid == raw_cid_v1(b"payload")
    assert store.get(cid) == b"payload"
    assert store.metadata(cid) == {"name": "evidence.jpg", "content_hash": "abc"}
    assert store.gateway_url(cid) == f"https://ipfs.example/ipfs/{cid}"
    assert (tmp_path / "pins" / cid).read_bytes() == b"payload"

    # Objects written to disk outlive the in-memory index.
    reopened = LocalContentStore(str(tmp_path / "pins"))
    assert reopened.get(cid) == b"payload"
    assert reopened.get("bafkreimissing") is None


@pytest.mark.asyncio
async def test_pinata_store_posts_file_and_metadata():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"IpfsHash": "bafybeigexample", "PinSize": 7})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    store = PinataContentStore("jwt-token", base_url="https://pin.test", gateway="https://gw.test/ipfs", client=client)
    cid = await store.pin(b"payload", "analysis.json", {"type": "analysis"})
    await store.aclose()

    assert cid == "bafybeigexample"
    assert store.gateway_url(cid) == "https://gw.test/ipfs/bafybeigexample"
    req = seen[0]
    assert req.url.path == "/pinning/pinFileToIPFS"
    assert req.headers["Authorization"] == "Bearer jwt-token"
    body = req.content
    assert b"payload" in body
    assert json.dumps({"name": "analysis.json", "keyvalues": {"type": "analysis"}}).encode() in body


@pytest.mark.asyncio
async def test_pinata_refusal_is_access_denied():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(401)))
    store = PinataContentStore("bad", base_url="https://pin.test", client=client)
    with pytest.raises(AccessDenied):
        await store.pin(b"x", "x.bin", {})
    await store.aclose()
