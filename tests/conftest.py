"""
Shared fixtures: a registry root under tmp_path, a wired RegistryContext and a
fake upstream registry served through httpx.MockTransport.
"""

import json
from pathlib import Path
from typing import Any, Callable, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient

from npm_registry.core.dependencies import RegistryContext
from npm_registry.domain.models import ForwarderSettings, ServerSettings
from npm_registry.domain.utils import package_basename
from npm_registry.main import create_app
from npm_registry.storage.json_metadata_store import JsonMetadataStore

UPSTREAM = "https://upstream.test"


class FakeUpstream:
    """
    Minimal upstream registry. Routes map a URL path to a callable building a
    fresh httpx.Response; unknown paths answer 404.
    """

    def __init__(self):
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, path: str, build: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[path] = build

    def add_json(self, path: str, data: Any, status: int = 200) -> None:
        self.add(path, lambda request: httpx.Response(status, json=data))

    def add_bytes(self, path: str, content: bytes, status: int = 200) -> None:
        self.add(path, lambda request: httpx.Response(status, content=content))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        build = self.routes.get(request.url.path)
        if build is None:
            return httpx.Response(404, json={"error": "not_found", "reason": "document not found"})
        return build(request)

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


class BrokenStream(httpx.AsyncByteStream):
    """Response body that fails after the first chunk."""

    async def __aiter__(self):
        yield b"first part of the tarball"
        raise httpx.ReadError("connection reset by peer")

    async def aclose(self) -> None:
        pass


def upstream_package(name: str, versions=("1.0.0",), base: str = UPSTREAM) -> Dict[str, Any]:
    return {
        "name": name,
        "_rev": "3-0a1b2c3d",
        "description": f"{name} from upstream",
        "dist-tags": {"latest": versions[-1]},
        "versions": {
            v: {
                "name": name,
                "version": v,
                "dist": {"tarball": f"{base}/{name}/-/{package_basename(name)}-{v}.tgz", "shasum": "0" * 40},
            }
            for v in versions
        },
    }


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def registry_root(tmp_path):
    root = tmp_path / "registry"
    root.mkdir()
    return root


@pytest.fixture
def settings(registry_root):
    return ServerSettings(
        registry_path=str(registry_root),
        forwarder=ForwarderSettings(registry=f"{UPSTREAM}/"),
    )


@pytest.fixture
def store(registry_root):
    store = JsonMetadataStore()
    store.initialize(registry_root)
    return store


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def transport(upstream):
    return httpx.MockTransport(upstream.handler)


@pytest.fixture
def context(settings, transport):
    return RegistryContext(settings, transport=transport)


@pytest.fixture
def client(settings, transport):
    app = create_app(settings, transport=transport)
    with TestClient(app) as test_client:
        yield test_client
