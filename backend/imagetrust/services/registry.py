"""Registry client for fetching image descriptors and detached signatures."""

import asyncio
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from ..config import Settings, settings
from ..models.registry import RegistryErrorCode
from ..models.signature import ImageDescriptor, SignedPayload
from .signing import signature_tag

logger = logging.getLogger(__name__)

DOCKER_HUB_REGISTRY = "docker.io"
DOCKER_HUB_API_HOST = "registry-1.docker.io"
DEFAULT_TAG = "latest"
SIGNATURE_ANNOTATION = "dev.cosignproject.cosign/signature"

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
    ]
)
SIGNATURE_MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)

_REPOSITORY_PATTERN = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$")
_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST_PATTERN = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[A-Za-z0-9=_-]+$")


class RegistryError(Exception):
    """Exception raised for registry access errors."""

    def __init__(
        self,
        message: str,
        *,
        error_code: Union[RegistryErrorCode, str] = RegistryErrorCode.UPSTREAM_ERROR,
    ) -> None:
        resolved_code = (
            error_code
            if isinstance(error_code, RegistryErrorCode)
            else RegistryErrorCode(error_code)
        )
        super().__init__(message)
        self.error_code = resolved_code
        self.message = message


@dataclass(frozen=True)
class ImageReference:
    """Parsed image reference."""

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def manifest_reference(self) -> str:
        """Digest if pinned, otherwise the tag."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def api_host(self) -> str:
        if self.registry == DOCKER_HUB_REGISTRY:
            return DOCKER_HUB_API_HOST
        return self.registry

    def __str__(self) -> str:
        name = f"{self.registry}/{self.repository}"
        if self.tag:
            name += f":{self.tag}"
        if self.digest:
            name += f"@{self.digest}"
        return name


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def parse_reference(reference: str) -> ImageReference:
    """
    Parse an image reference such as ``ghcr.io/org/app:1.0`` or ``nginx@sha256:...``.

    Raises:
        RegistryError: If the reference is not a valid image name
    """
    ref = reference.strip()
    if not ref:
        raise RegistryError("empty image reference", error_code=RegistryErrorCode.INVALID_REFERENCE)

    digest: Optional[str] = None
    if "@" in ref:
        ref, digest = ref.split("@", 1)
        if not _DIGEST_PATTERN.match(digest):
            raise RegistryError(
                f"invalid digest in reference: {reference}",
                error_code=RegistryErrorCode.INVALID_REFERENCE,
            )

    tag: Optional[str] = None
    last_slash = ref.rfind("/")
    last_colon = ref.rfind(":")
    if last_colon > last_slash:
        ref, tag = ref[:last_colon], ref[last_colon + 1:]
        if not _TAG_PATTERN.match(tag):
            raise RegistryError(
                f"invalid tag in reference: {reference}",
                error_code=RegistryErrorCode.INVALID_REFERENCE,
            )

    parts = ref.split("/", 1)
    if len(parts) == 2 and _looks_like_registry(parts[0]):
        registry, repository = parts[0], parts[1]
    else:
        registry, repository = DOCKER_HUB_REGISTRY, ref

    if registry in ("index.docker.io", DOCKER_HUB_API_HOST):
        registry = DOCKER_HUB_REGISTRY
    if registry == DOCKER_HUB_REGISTRY and "/" not in repository:
        repository = f"library/{repository}"

    if not _REPOSITORY_PATTERN.match(repository):
        raise RegistryError(
            f"invalid repository in reference: {reference}",
            error_code=RegistryErrorCode.INVALID_REFERENCE,
        )

    if tag is None and digest is None:
        tag = DEFAULT_TAG
    return ImageReference(registry=registry, repository=repository, tag=tag, digest=digest)


class RegistryClient:
    """
    Anonymous OCI distribution API client.

    Responsibilities:
    - Resolve an image reference to its descriptor (digest + media type)
    - Read detached signatures stored under the signature tag for a digest
    """

    def __init__(
        self,
        settings_obj: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings_obj or settings
        # テストでは httpx.MockTransport を注入する
        self._transport = transport

    def _base_url(self, reference: ImageReference) -> str:
        host = reference.api_host
        hostname = host.split(":", 1)[0]
        insecure = self._settings.allow_insecure_registry or hostname in ("localhost", "127.0.0.1")
        scheme = "http" if insecure else "https"
        return f"{scheme}://{host}/v2/{reference.repository}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.registry_timeout_seconds,
            transport=self._transport,
            follow_redirects=True,
        )

    async def fetch(self, reference: Union[str, ImageReference]) -> Tuple[ImageDescriptor, List[SignedPayload]]:
        """Resolve the descriptor and fetch every signature for it in one session."""
        ref = parse_reference(reference) if isinstance(reference, str) else reference
        async with self._client() as client:
            descriptor = await self._fetch_descriptor(client, ref)
            signatures = await self._fetch_signatures(client, ref, descriptor)
        return descriptor, signatures

    async def fetch_descriptor(self, reference: Union[str, ImageReference]) -> ImageDescriptor:
        """
        Resolve an image reference to its descriptor.

        Raises:
            RegistryError: If the manifest cannot be fetched
        """
        ref = parse_reference(reference) if isinstance(reference, str) else reference
        async with self._client() as client:
            return await self._fetch_descriptor(client, ref)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    async def _get(
        self, client: httpx.AsyncClient, url: str, accept: Optional[str] = None
    ) -> httpx.Response:
        headers = {"Accept": accept} if accept else {}
        try:
            response = await client.get(url, headers=headers)
        except httpx.TimeoutException as exc:
            raise RegistryError(
                f"registry request timed out: {url}",
                error_code=RegistryErrorCode.UPSTREAM_UNAVAILABLE,
            ) from exc
        except httpx.RequestError as exc:
            raise RegistryError(
                f"registry unavailable: {exc}",
                error_code=RegistryErrorCode.UPSTREAM_UNAVAILABLE,
            ) from exc

        status_code = response.status_code
        if status_code in (401, 403):
            raise RegistryError(
                f"registry requires authentication for {url}",
                error_code=RegistryErrorCode.UNAUTHORIZED,
            )
        if status_code == 404:
            raise RegistryError(f"not found: {url}", error_code=RegistryErrorCode.NOT_FOUND)
        if 500 <= status_code <= 599:
            raise RegistryError(
                f"registry returned HTTP {status_code} for {url}",
                error_code=RegistryErrorCode.UPSTREAM_UNAVAILABLE,
            )
        if not 200 <= status_code <= 299:
            raise RegistryError(
                f"registry returned HTTP {status_code} for {url}",
                error_code=RegistryErrorCode.UPSTREAM_ERROR,
            )
        return response

    async def _fetch_descriptor(
        self, client: httpx.AsyncClient, ref: ImageReference
    ) -> ImageDescriptor:
        url = f"{self._base_url(ref)}/manifests/{ref.manifest_reference}"
        response = await self._get(client, url, accept=MANIFEST_ACCEPT)
        body = response.content

        digest = response.headers.get("Docker-Content-Digest") or (
            "sha256:" + hashlib.sha256(body).hexdigest()
        )
        if ref.digest and digest != ref.digest:
            raise RegistryError(
                f"manifest digest {digest} does not match requested {ref.digest}",
                error_code=RegistryErrorCode.UPSTREAM_ERROR,
            )

        media_type = response.headers.get("Content-Type", "").split(";", 1)[0].strip()
        if not media_type:
            media_type = str(self._decode_json(body, url).get("mediaType", ""))
        logger.debug("Resolved %s to %s (%s)", ref, digest, media_type)
        return ImageDescriptor(digest=digest, media_type=media_type)

    async def _fetch_signatures(
        self, client: httpx.AsyncClient, ref: ImageReference, descriptor: ImageDescriptor
    ) -> List[SignedPayload]:
        tag = signature_tag(descriptor.digest)
        url = f"{self._base_url(ref)}/manifests/{tag}"
        try:
            response = await self._get(client, url, accept=SIGNATURE_MANIFEST_ACCEPT)
        except RegistryError as exc:
            if exc.error_code == RegistryErrorCode.NOT_FOUND:
                logger.info("No signatures found for %s (tag %s)", ref, tag)
                return []
            raise

        manifest = self._decode_json(response.content, url)
        layers = manifest.get("layers") or []
        if not isinstance(layers, list):
            raise RegistryError(
                f"signature manifest has invalid layers: {url}",
                error_code=RegistryErrorCode.UPSTREAM_ERROR,
            )

        limit = self._settings.registry_max_signatures
        if len(layers) > limit:
            logger.warning(
                "Signature manifest %s has %d layers; only the first %d are read",
                tag,
                len(layers),
                limit,
            )
            layers = layers[:limit]

        semaphore = asyncio.Semaphore(self._settings.registry_fetch_concurrency)
        tasks = [self._fetch_layer_with_limit(semaphore, client, ref, layer) for layer in layers]
        # gather は入力順で結果を返すため、レイヤー順がそのまま候補順になる
        results = await asyncio.gather(*tasks, return_exceptions=True)

        signatures: List[SignedPayload] = []
        for index, result in enumerate(results):
            if isinstance(result, RegistryError):
                # 取得できないレイヤーはその候補だけを落とし、残りで検証を続ける
                logger.warning(
                    "Skipping signature layer %d of %s: %s", index, tag, result.message
                )
                continue
            if isinstance(result, BaseException):
                raise result
            signatures.append(result)
        return signatures

    async def _fetch_layer_with_limit(
        self,
        semaphore: asyncio.Semaphore,
        client: httpx.AsyncClient,
        ref: ImageReference,
        layer: Any,
    ) -> SignedPayload:
        async with semaphore:
            return await self._fetch_layer(client, ref, layer)

    async def _fetch_layer(
        self, client: httpx.AsyncClient, ref: ImageReference, layer: Any
    ) -> SignedPayload:
        if not isinstance(layer, dict) or not isinstance(layer.get("digest"), str):
            raise RegistryError(
                "signature layer is missing its digest",
                error_code=RegistryErrorCode.UPSTREAM_ERROR,
            )
        blob_digest = layer["digest"]
        annotations = layer.get("annotations") or {}
        # 署名アノテーションが無いレイヤーは空署名として扱い、検証側で棄却させる
        base64_signature = str(annotations.get(SIGNATURE_ANNOTATION, ""))

        url = f"{self._base_url(ref)}/blobs/{blob_digest}"
        response = await self._get(client, url)
        payload = response.content
        self._check_blob_digest(blob_digest, payload)
        return SignedPayload(payload=payload, base64_signature=base64_signature)

    @staticmethod
    def _check_blob_digest(expected: str, content: bytes) -> None:
        algorithm, _, expected_hex = expected.partition(":")
        if algorithm != "sha256":
            # sha256 以外のアルゴリズムは照合しない
            return
        actual_hex = hashlib.sha256(content).hexdigest()
        if actual_hex != expected_hex:
            raise RegistryError(
                f"blob digest mismatch: expected {expected}, got sha256:{actual_hex}",
                error_code=RegistryErrorCode.UPSTREAM_ERROR,
            )

    @staticmethod
    def _decode_json(body: bytes, url: str) -> Dict[str, Any]:
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise RegistryError(
                f"invalid JSON from {url}: {exc}",
                error_code=RegistryErrorCode.UPSTREAM_ERROR,
            ) from exc
        if not isinstance(data, dict):
            raise RegistryError(
                f"unexpected JSON document from {url}",
                error_code=RegistryErrorCode.UPSTREAM_ERROR,
            )
        return data
