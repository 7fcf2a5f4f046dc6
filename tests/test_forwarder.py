"""
Tests for ProxyForwarder against a fake upstream registry.
"""

import asyncio
import json
import os
import time

import httpx
import pytest

from conftest import UPSTREAM, upstream_package
from npm_registry.core.errors import NetworkError, NotFound, UpstreamError
from npm_registry.domain.models import ForwarderSettings, PackageDocument
from npm_registry.services.forwarder import ProxyForwarder, with_default_tags
from npm_registry.services.upstream import client_options


def make_forwarder(store, settings, transport, **forwarder_overrides):
    forwarder = settings.forwarder.model_copy(update=forwarder_overrides)
    return ProxyForwarder(store, settings.model_copy(update={"forwarder": forwarder}), transport=transport)


@pytest.mark.asyncio
async def test_forward_rewrites_tarball_urls(store, settings, transport, upstream):
    upstream.add_json("/pkg", upstream_package("pkg", base="https://upstream"))
    forwarder = ProxyForwarder(store, settings, transport=transport)

    await forwarder.resolve("pkg")

    document = store.get("pkg")
    assert document.versions["1.0.0"]["dist"]["tarball"] == "http://localhost:5984/pkg/-/pkg-1.0.0.tgz"
    assert document.forward_dists == {"pkg-1.0.0.tgz": "https://upstream/pkg/-/pkg-1.0.0.tgz"}
    assert document.proxied is True
    assert document.model_extra["description"] == "pkg from upstream"
    assert store.get_meta().counters() == {"count": 1, "local": 0, "proxied": 1}


@pytest.mark.asyncio
async def test_forward_uses_public_base_url(store, settings, transport, upstream):
    upstream.add_json("/pkg", upstream_package("pkg"))
    settings = settings.model_copy(update={"base_url": "https://npm.example.com/registry"})
    forwarder = ProxyForwarder(store, settings, transport=transport)

    document = await forwarder.forward("pkg")

    assert document.versions["1.0.0"]["dist"]["tarball"] == "https://npm.example.com/registry/pkg/-/pkg-1.0.0.tgz"


@pytest.mark.asyncio
async def test_forward_request(store, settings, transport, upstream):
    upstream.add_json("/pkg", upstream_package("pkg"))
    forwarder = make_forwarder(store, settings, transport, user_agent="npm-registry-test")

    await forwarder.forward("pkg")

    request = upstream.requests[0]
    assert str(request.url) == f"{UPSTREAM}/pkg"
    assert request.headers["user-agent"] == "npm-registry-test"


@pytest.mark.asyncio
async def test_forward_scoped_package(store, settings, transport, upstream, registry_root):
    upstream.add_json("/@scope/pkg", upstream_package("@scope/pkg"))
    forwarder = ProxyForwarder(store, settings, transport=transport)

    document = await forwarder.resolve("@scope/pkg")

    # The scope separator travels percent-encoded, as npm registries expect.
    request = upstream.requests[0]
    assert request.url.raw_path.lower() == b"/@scope%2fpkg"
    assert forwarder.upstream_url("@scope/pkg") == f"{UPSTREAM}/@scope%2fpkg"

    assert document.versions["1.0.0"]["dist"]["tarball"] == "http://localhost:5984/@scope/pkg/-/pkg-1.0.0.tgz"
    assert document.forward_dists == {"pkg-1.0.0.tgz": f"{UPSTREAM}/@scope/pkg/-/pkg-1.0.0.tgz"}
    assert (registry_root / "@scope" / "pkg" / "pkg.json").is_file()


@pytest.mark.asyncio
async def test_resolve_serves_cache_without_upstream(store, settings, transport, upstream):
    upstream.add_json("/pkg", upstream_package("pkg", versions=("1.0.0", "1.1.0")))
    forwarder = ProxyForwarder(store, settings, transport=transport)

    await forwarder.resolve("pkg")
    version = await forwarder.resolve("pkg", "1.0.0")
    tagged = await forwarder.resolve("pkg", "latest")

    assert version["version"] == "1.0.0"
    assert tagged["version"] == "1.1.0"
    assert upstream.paths() == ["/pkg"]


@pytest.mark.asyncio
async def test_resolve_forwards_unknown_version(store, settings, transport, upstream):
    upstream.add_json("/pkg", upstream_package("pkg", versions=("1.0.0",)))
    forwarder = ProxyForwarder(store, settings, transport=transport)
    await forwarder.resolve("pkg")

    upstream.add_json("/pkg", upstream_package("pkg", versions=("1.0.0", "2.0.0")))
    version = await forwarder.resolve("pkg", "2.0.0")

    assert version["version"] == "2.0.0"
    assert len(upstream.requests) == 2

    with pytest.raises(NotFound):
        await forwarder.resolve("pkg", "3.0.0")


@pytest.mark.asyncio
async def test_resolve_without_auto_forward(store, settings, transport, upstream):
    upstream.add_json("/pkg", upstream_package("pkg"))
    forwarder = make_forwarder(store, settings, transport, auto_forward=False)

    with pytest.raises(NotFound):
        await forwarder.resolve("pkg")
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_upstream_error_is_not_cached(store, settings, transport, upstream):
    upstream.add_json("/pkg", {"error": "internal"}, status=500)
    forwarder = ProxyForwarder(store, settings, transport=transport)

    with pytest.raises(UpstreamError) as exc_info:
        await forwarder.forward("pkg")
    assert exc_info.value.status == 500

    with pytest.raises(NotFound):
        await forwarder.resolve("pkg")
    assert store.get("pkg") is None
    assert store.get_meta().count == 0


@pytest.mark.asyncio
async def test_network_error(store, settings):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    forwarder = ProxyForwarder(store, settings, transport=httpx.MockTransport(refuse))

    with pytest.raises(NetworkError):
        await forwarder.forward("pkg")
    with pytest.raises(NotFound):
        await forwarder.resolve("pkg")
    assert store.get("pkg") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"not json", b"[1, 2, 3]", b'{"versions": "nope"}'])
async def test_invalid_upstream_body(store, settings, transport, upstream, body):
    upstream.add_bytes("/pkg", body)
    forwarder = ProxyForwarder(store, settings, transport=transport)

    with pytest.raises(UpstreamError):
        await forwarder.forward("pkg")
    assert store.get("pkg") is None


@pytest.mark.asyncio
async def test_expired_metadata_is_refreshed(store, settings, transport, upstream):
    upstream.add_json("/pkg", upstream_package("pkg", versions=("1.0.0",)))
    forwarder = make_forwarder(store, settings, transport, meta_ttl=60)
    await forwarder.resolve("pkg")

    # Still fresh: no second request.
    await forwarder.resolve("pkg")
    assert len(upstream.requests) == 1

    doc_path = store.package_dir("pkg") / "pkg.json"
    an_hour_ago = time.time() - 3600
    os.utime(doc_path, (an_hour_ago, an_hour_ago))
    upstream.add_json("/pkg", upstream_package("pkg", versions=("1.0.0", "1.1.0")))

    document = await forwarder.resolve("pkg")

    assert sorted(document.versions) == ["1.0.0", "1.1.0"]
    assert len(upstream.requests) == 2


@pytest.mark.asyncio
async def test_expired_metadata_falls_back_to_cache(store, settings, transport, upstream):
    upstream.add_json("/pkg", upstream_package("pkg"))
    forwarder = make_forwarder(store, settings, transport, meta_ttl=60)
    await forwarder.resolve("pkg")

    doc_path = store.package_dir("pkg") / "pkg.json"
    an_hour_ago = time.time() - 3600
    os.utime(doc_path, (an_hour_ago, an_hour_ago))
    upstream.add_json("/pkg", {"error": "down"}, status=503)

    document = await forwarder.resolve("pkg")
    assert list(document.versions) == ["1.0.0"]


@pytest.mark.asyncio
async def test_refresh(store, settings, transport, upstream):
    forwarder = ProxyForwarder(store, settings, transport=transport)
    with pytest.raises(NotFound):
        await forwarder.refresh("pkg")
    assert upstream.requests == []

    upstream.add_json("/pkg", upstream_package("pkg"))
    await forwarder.resolve("pkg")
    upstream.add_json("/pkg", upstream_package("pkg", versions=("1.0.0", "1.0.1")))

    document = await forwarder.refresh("pkg")
    assert "1.0.1" in document.versions
    assert store.get_meta().counters() == {"count": 1, "local": 0, "proxied": 1}


def test_default_latest_tag():
    document = PackageDocument(name="pkg", versions={"1.9.0": {}, "1.10.0": {}, "1.2.0": {}})
    served = with_default_tags(document)

    assert served.dist_tags == {"latest": "1.10.0"}
    assert document.dist_tags == {}


def test_client_options():
    options = client_options(ForwarderSettings(
        proxy="http://proxy.internal:3128",
        ignore_cert=True,
        user_agent="agent/1.0",
        timeout=5,
    ))

    assert options["proxy"] == "http://proxy.internal:3128"
    assert options["verify"] is False
    assert options["headers"] == {"User-Agent": "agent/1.0"}
    assert options["timeout"] == httpx.Timeout(5)

    assert "proxy" not in client_options(ForwarderSettings())


@pytest.mark.asyncio
async def test_forward_through_http_proxy(store, settings):
    seen = {}
    body = json.dumps(upstream_package("pkg", base="http://upstream.test")).encode()

    async def proxy(reader, writer):
        head = await reader.readuntil(b"\r\n\r\n")
        request_line, *header_lines = head.decode("latin-1").split("\r\n")
        seen["request_line"] = request_line
        seen["headers"] = {
            key.strip().lower(): value.strip()
            for key, _, value in (line.partition(":") for line in header_lines if line)
        }
        writer.write(
            b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
            + f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n".encode()
            + body
        )
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(proxy, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        forwarder = make_forwarder(
            store, settings, None,
            registry="http://upstream.test/",
            proxy=f"http://127.0.0.1:{port}",
        )
        document = await forwarder.forward("pkg")
    finally:
        server.close()
        await server.wait_closed()

    # Plain-HTTP upstreams are requested from the proxy in absolute form.
    assert seen["request_line"] == "GET http://upstream.test/pkg HTTP/1.1"
    assert seen["headers"]["host"] == "upstream.test"
    assert seen["headers"]["user-agent"] == "npm-registry"
    assert document.forward_dists == {"pkg-1.0.0.tgz": "http://upstream.test/pkg/-/pkg-1.0.0.tgz"}
