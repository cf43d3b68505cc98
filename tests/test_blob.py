from __future__ import annotations

import asyncio

import httpx
import pytest

from runops.services.blob import BlobStoreError, HttpBlobStore, InMemoryBlobStore


def test_http_blob_store_puts_with_bearer_token_and_uses_returned_url() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"url": "https://cdn.example.com/runs/run-1.xlsx"})

    store = HttpBlobStore(
        base_url="https://blob.example.com/",
        token="secret",
        timeout_seconds=5.0,
        transport=httpx.MockTransport(handler),
    )
    stored = asyncio.run(store.put("runs/run-1.xlsx", b"data", "application/octet-stream"))

    assert stored.url == "https://cdn.example.com/runs/run-1.xlsx"
    assert seen[0].method == "PUT"
    assert str(seen[0].url) == "https://blob.example.com/runs/run-1.xlsx"
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert seen[0].content == b"data"


def test_http_blob_store_falls_back_to_put_url() -> None:
    store = HttpBlobStore(
        base_url="https://blob.example.com",
        token=None,
        timeout_seconds=5.0,
        transport=httpx.MockTransport(lambda request: httpx.Response(201, text="stored")),
    )
    stored = asyncio.run(store.put("a.txt", b"x", "text/plain"))
    assert stored.url == "https://blob.example.com/a.txt"


def test_http_blob_store_wraps_failures() -> None:
    store = HttpBlobStore(
        base_url="https://blob.example.com",
        token=None,
        timeout_seconds=5.0,
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    with pytest.raises(BlobStoreError):
        asyncio.run(store.put("a.txt", b"x", "text/plain"))


def test_in_memory_blob_store_keeps_content() -> None:
    store = InMemoryBlobStore()
    stored = asyncio.run(store.put("runs/a.txt", b"x", "text/plain"))
    assert stored.url == "memory://runs/a.txt"
    assert store.objects["runs/a.txt"] == (b"x", "text/plain")
