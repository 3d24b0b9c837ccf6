"""署名検証 API。"""

import base64
import logging
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from fastapi import APIRouter

from ..config import settings
from ..models.signature import (
    DescriptorModel,
    PayloadRequest,
    PayloadResponse,
    SignaturePolicy,
    SignedPayloadModel,
    VerifyImageRequest,
    VerifyImageResponse,
    VerifyRequest,
    VerifyResponse,
)
from ..services.keys import KeyLoadError, load_public_key, load_public_key_inline
from ..services.signature_verifier import RegistrySignatureVerifier, verify_signed_payloads
from ..services.signing import build_simple_signing_payload, payload_media_type

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/signatures", tags=["signatures"])
signature_verifier = RegistrySignatureVerifier()


def resolve_public_key(key_ref: Optional[str]) -> Ed25519PublicKey:
    """
    リクエストの公開鍵、無ければ設定済みの既定鍵を読み込む。

    ファイルパスとして解決するのは VERIFY_PUBLIC_KEY のみ。
    """
    if key_ref:
        return load_public_key_inline(key_ref)
    if not settings.verify_public_key:
        raise KeyLoadError(
            "公開鍵が指定されておらず、VERIFY_PUBLIC_KEY も設定されていません。"
        )
    return load_public_key(settings.verify_public_key)


@router.post("/verify", response_model=VerifyResponse)
async def verify_signatures(request: VerifyRequest) -> VerifyResponse:
    """取得済みの署名付きペイロード群を検証する。"""
    public_key = resolve_public_key(request.public_key)
    candidates = [item.to_signed_payload() for item in request.signatures]
    verified = verify_signed_payloads(
        public_key,
        request.descriptor.to_descriptor(),
        request.annotations,
        request.check_claims,
        candidates,
    )
    logger.info(
        "署名検証 API: candidates=%d verified=%d check_claims=%s",
        len(candidates),
        len(verified),
        request.check_claims,
    )
    return VerifyResponse(
        verified=[SignedPayloadModel.from_signed_payload(item) for item in verified],
        count=len(verified),
    )


@router.post("/verify-image", response_model=VerifyImageResponse)
async def verify_image(
    request: VerifyImageRequest,
    correlation_id: Optional[str] = None,
) -> VerifyImageResponse:
    """レジストリから署名を取得してイメージを検証する。"""
    public_key = resolve_public_key(request.public_key)
    policy = SignaturePolicy(
        check_claims=request.check_claims, annotations=request.annotations
    )
    descriptor, verified = await signature_verifier.verify_image(
        image=request.image,
        public_key=public_key,
        policy=policy,
        correlation_id=correlation_id,
    )
    return VerifyImageResponse(
        image=request.image,
        descriptor=DescriptorModel.from_descriptor(descriptor),
        verified=[SignedPayloadModel.from_signed_payload(item) for item in verified],
        count=len(verified),
    )


@router.post("/payload", response_model=PayloadResponse)
async def generate_payload(request: PayloadRequest) -> PayloadResponse:
    """署名対象となる simple signing ペイロードを生成する。"""
    payload = build_simple_signing_payload(
        request.descriptor.to_descriptor(),
        annotations=request.annotations,
        docker_reference=request.docker_reference,
    )
    return PayloadResponse(
        payload=base64.b64encode(payload).decode("ascii"),
        media_type=payload_media_type(),
    )
