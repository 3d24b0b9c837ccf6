"""レジストリクライアントのテスト (httpx.MockTransport)。"""

import hashlib
import json
import logging
from typing import Dict, List, Optional

import httpx
import pytest

from imagetrust.config import Settings
from imagetrust.models.registry import RegistryErrorCode
from imagetrust.models.signature import SignedPayload
from imagetrust.services.registry import (
    SIGNATURE_ANNOTATION,
    RegistryClient,
    RegistryError,
    parse_reference,
)
from imagetrust.services.signing import signature_tag

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
HOST = "registry.example.test"
REPO = "org/app"


def _digest(content: bytes) -> str:
    return "sha256:" + hashlib.sha256(content).hexdigest()


class FakeRegistry:
    """最小限の OCI distribution API を模したハンドラ。"""

    def __init__(self) -> None:
        self.manifest = json.dumps({"schemaVersion": 2, "mediaType": OCI_MANIFEST}).encode()
        self.digest = _digest(self.manifest)
        self.blobs: Dict[str, bytes] = {}
        self.signature_layers: Optional[List[dict]] = None
        self.requests: List[httpx.Request] = []

    def add_signature(self, payload: bytes, signature: Optional[str]) -> None:
        if self.signature_layers is None:
            self.signature_layers = []
        digest = _digest(payload)
        self.blobs[digest] = payload
        layer = {"mediaType": "application/vnd.dev.cosign.simplesigning.v1+json", "digest": digest, "size": len(payload)}
        if signature is not None:
            layer["annotations"] = {SIGNATURE_ANNOTATION: signature}
        self.signature_layers.append(layer)

    def add_layer(self, layer: dict) -> None:
        """blob を登録せずにレイヤーだけを追加する。"""
        if self.signature_layers is None:
            self.signature_layers = []
        self.signature_layers.append(layer)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        prefix = f"/v2/{REPO}"
        path = request.url.path
        if path == f"{prefix}/manifests/1.0":
            return httpx.Response(
                200,
                content=self.manifest,
                headers={"Content-Type": OCI_MANIFEST, "Docker-Content-Digest": self.digest},
            )
        if path == f"{prefix}/manifests/{signature_tag(self.digest)}":
            if self.signature_layers is None:
                return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})
            body = {"schemaVersion": 2, "mediaType": OCI_MANIFEST, "layers": self.signature_layers}
            return httpx.Response(200, json=body, headers={"Content-Type": OCI_MANIFEST})
        if path.startswith(f"{prefix}/blobs/"):
            digest = path.rsplit("/", 1)[1]
            if digest in self.blobs:
                return httpx.Response(200, content=self.blobs[digest])
        return httpx.Response(404)


@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def registry_client(fake_registry) -> RegistryClient:
    return RegistryClient(settings_obj=Settings(), transport=httpx.MockTransport(fake_registry))


class TestParseReference:
    """イメージ参照の解析。"""

    def test_docker_hub_short_name(self):
        ref = parse_reference("nginx")

        assert ref.registry == "docker.io"
        assert ref.repository == "library/nginx"
        assert ref.tag == "latest"
        assert ref.api_host == "registry-1.docker.io"

    def test_registry_with_port_and_tag(self):
        ref = parse_reference("localhost:5000/team/app:v1")

        assert ref.registry == "localhost:5000"
        assert ref.repository == "team/app"
        assert ref.manifest_reference == "v1"

    def test_digest_reference(self):
        digest = "sha256:" + "0" * 64
        ref = parse_reference(f"ghcr.io/org/app@{digest}")

        assert ref.digest == digest
        assert ref.tag is None
        assert ref.manifest_reference == digest

    @pytest.mark.parametrize("reference", ["", "UPPER/case", "app:bad tag", "app@nodigest"])
    def test_invalid_references(self, reference):
        with pytest.raises(RegistryError) as exc_info:
            parse_reference(reference)

        assert exc_info.value.error_code == RegistryErrorCode.INVALID_REFERENCE


@pytest.mark.asyncio
async def test_fetch_descriptor_uses_content_digest(registry_client, fake_registry):
    descriptor = await registry_client.fetch_descriptor(f"{HOST}/{REPO}:1.0")

    assert descriptor.digest == fake_registry.digest
    assert descriptor.media_type == OCI_MANIFEST
    request = fake_registry.requests[0]
    assert request.url.scheme == "https"
    assert "application/vnd.oci.image.manifest.v1+json" in request.headers["Accept"]


@pytest.mark.asyncio
async def test_fetch_returns_signatures_in_layer_order(registry_client, fake_registry):
    fake_registry.add_signature(b'{"n":1}', "c2lnMQ==")
    fake_registry.add_signature(b'{"n":2}', "c2lnMg==")
    fake_registry.add_signature(b'{"n":3}', None)

    descriptor, signatures = await registry_client.fetch(f"{HOST}/{REPO}:1.0")

    assert descriptor.digest == fake_registry.digest
    assert signatures == [
        SignedPayload(payload=b'{"n":1}', base64_signature="c2lnMQ=="),
        SignedPayload(payload=b'{"n":2}', base64_signature="c2lnMg=="),
        SignedPayload(payload=b'{"n":3}', base64_signature=""),
    ]


@pytest.mark.asyncio
async def test_missing_signature_manifest_yields_empty_list(registry_client):
    _, signatures = await registry_client.fetch(f"{HOST}/{REPO}:1.0")

    assert signatures == []


@pytest.mark.asyncio
async def test_signature_layers_are_capped(fake_registry):
    for index in range(4):
        fake_registry.add_signature(f'{{"n":{index}}}'.encode(), "AAAA")
    client = RegistryClient(
        settings_obj=Settings(registry_max_signatures=2),
        transport=httpx.MockTransport(fake_registry),
    )

    _, signatures = await client.fetch(f"{HOST}/{REPO}:1.0")

    assert [s.payload for s in signatures] == [b'{"n":0}', b'{"n":1}']


@pytest.mark.asyncio
async def test_tampered_blob_is_skipped(registry_client, fake_registry, caplog):
    fake_registry.add_signature(b"original", "AAAA")
    digest = next(iter(fake_registry.blobs))
    fake_registry.blobs[digest] = b"tampered"
    fake_registry.add_signature(b"intact", "c2ln")

    with caplog.at_level(logging.WARNING, logger="imagetrust.services.registry"):
        _, signatures = await registry_client.fetch(f"{HOST}/{REPO}:1.0")

    assert signatures == [SignedPayload(payload=b"intact", base64_signature="c2ln")]
    assert "blob digest mismatch" in caplog.text


@pytest.mark.asyncio
async def test_broken_layers_do_not_abort_the_fetch(registry_client, fake_registry):
    fake_registry.add_layer({"mediaType": OCI_MANIFEST, "digest": "sha256:" + "0" * 64})
    fake_registry.add_signature(b'{"n":1}', "c2lnMQ==")
    fake_registry.add_layer({"mediaType": OCI_MANIFEST})
    fake_registry.add_signature(b'{"n":2}', "c2lnMg==")

    _, signatures = await registry_client.fetch(f"{HOST}/{REPO}:1.0")

    assert [s.payload for s in signatures] == [b'{"n":1}', b'{"n":2}']


@pytest.mark.asyncio
async def test_signature_manifest_failure_aborts_the_fetch(fake_registry):
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith(".cosign"):
            return httpx.Response(503)
        return fake_registry(request)

    client = RegistryClient(settings_obj=Settings(), transport=httpx.MockTransport(_handler))

    with pytest.raises(RegistryError) as exc_info:
        await client.fetch(f"{HOST}/{REPO}:1.0")

    assert exc_info.value.error_code == RegistryErrorCode.UPSTREAM_UNAVAILABLE


@pytest.mark.asyncio
async def test_unknown_image_is_not_found(registry_client):
    with pytest.raises(RegistryError) as exc_info:
        await registry_client.fetch_descriptor(f"{HOST}/{REPO}:missing")

    assert exc_info.value.error_code == RegistryErrorCode.NOT_FOUND


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (401, RegistryErrorCode.UNAUTHORIZED),
        (403, RegistryErrorCode.UNAUTHORIZED),
        (503, RegistryErrorCode.UPSTREAM_UNAVAILABLE),
        (418, RegistryErrorCode.UPSTREAM_ERROR),
    ],
)
async def test_http_errors_are_mapped(status_code, expected):
    client = RegistryClient(
        settings_obj=Settings(),
        transport=httpx.MockTransport(lambda request: httpx.Response(status_code)),
    )

    with pytest.raises(RegistryError) as exc_info:
        await client.fetch_descriptor(f"{HOST}/{REPO}:1.0")

    assert exc_info.value.error_code == expected


@pytest.mark.asyncio
async def test_connection_error_is_upstream_unavailable():
    def _raise(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = RegistryClient(settings_obj=Settings(), transport=httpx.MockTransport(_raise))

    with pytest.raises(RegistryError) as exc_info:
        await client.fetch_descriptor(f"{HOST}/{REPO}:1.0")

    assert exc_info.value.error_code == RegistryErrorCode.UPSTREAM_UNAVAILABLE


@pytest.mark.asyncio
async def test_localhost_registry_uses_http():
    seen: List[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"{}", headers={"Content-Type": OCI_MANIFEST})

    client = RegistryClient(settings_obj=Settings(), transport=httpx.MockTransport(_handler))

    descriptor = await client.fetch_descriptor("localhost:5000/app:1")

    assert seen[0].url.scheme == "http"
    assert descriptor.digest == _digest(b"{}")
