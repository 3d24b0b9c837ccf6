from __future__ import annotations

import os
from typing import Callable, Dict, Optional

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from hypothesis import settings

from imagetrust.models.signature import ImageDescriptor, SignedPayload
from imagetrust.services.claims import SIMPLE_SIGNING_MEDIA_TYPE
from imagetrust.services.signing import build_simple_signing_payload, sign_blob

_DEFAULT_MAX_EXAMPLES = int(os.getenv("HYPOTHESIS_MAX_EXAMPLES", "25"))

# Ed25519 の署名/検証を含むため、CI ではデッドラインを無効化してフレークを防ぐ。
if "HYPOTHESIS_PROFILE" not in os.environ:
    try:
        settings.register_profile(
            "ci",
            settings(
                deadline=None,
                max_examples=_DEFAULT_MAX_EXAMPLES,
            ),
        )
    except ValueError:
        # プロファイルが既に存在する場合は無視して既定プロファイルを読み込む
        pass
    settings.load_profile("ci")

IMAGE_DIGEST = "sha256:" + "ab" * 32


@pytest.fixture
def private_key() -> Ed25519PrivateKey:
    """テストごとに新しい署名鍵を用意する。"""
    return Ed25519PrivateKey.generate()


@pytest.fixture
def public_key(private_key: Ed25519PrivateKey) -> Ed25519PublicKey:
    return private_key.public_key()


@pytest.fixture
def descriptor() -> ImageDescriptor:
    """simple signing 形式を宣言する検査対象イメージ。"""
    return ImageDescriptor(digest=IMAGE_DIGEST, media_type=SIMPLE_SIGNING_MEDIA_TYPE)


@pytest.fixture
def sign(private_key: Ed25519PrivateKey) -> Callable[[bytes], SignedPayload]:
    """任意のバイト列に署名して SignedPayload を作るヘルパー。"""

    def _sign(payload: bytes) -> SignedPayload:
        return SignedPayload(payload=payload, base64_signature=sign_blob(private_key, payload))

    return _sign


@pytest.fixture
def signed_claim(
    sign: Callable[[bytes], SignedPayload],
) -> Callable[..., SignedPayload]:
    """ダイジェストとアノテーションを主張する simple signing ペイロードに署名する。"""

    def _signed_claim(
        digest: str = IMAGE_DIGEST, annotations: Optional[Dict[str, str]] = None
    ) -> SignedPayload:
        payload = build_simple_signing_payload(
            ImageDescriptor(digest=digest, media_type=SIMPLE_SIGNING_MEDIA_TYPE),
            annotations=annotations,
        )
        return sign(payload)

    return _signed_claim
