"""署名の作成側で使うヘルパー（ペイロード生成・blob 署名・署名タグ）。"""

import base64
import json
from typing import Any, Dict, Mapping, Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from ..models.signature import ImageDescriptor
from .claims import SIMPLE_SIGNING_MEDIA_TYPE

SIMPLE_SIGNING_TYPE = "cosign container image signature"
SIGNATURE_TAG_SUFFIX = ".cosign"


def build_simple_signing_payload(
    descriptor: ImageDescriptor,
    annotations: Optional[Mapping[str, str]] = None,
    docker_reference: Optional[str] = None,
) -> bytes:
    """
    イメージ記述子から simple signing 形式のペイロードを生成する。

    キーはソートし区切り文字も固定するため、同じ入力からは常に同じバイト列になる。
    署名はこのバイト列そのものに対して行う。
    """
    critical: Dict[str, Any] = {
        "image": {"docker-manifest-digest": descriptor.digest},
        "type": SIMPLE_SIGNING_TYPE,
    }
    if docker_reference:
        critical["identity"] = {"docker-reference": docker_reference}

    document = {
        "critical": critical,
        "optional": dict(annotations) if annotations else None,
    }
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")


def payload_media_type() -> str:
    """build_simple_signing_payload が生成するペイロードのメディアタイプ。"""
    return SIMPLE_SIGNING_MEDIA_TYPE


def sign_blob(private_key: Ed25519PrivateKey, payload: bytes) -> str:
    """payload のバイト列に対する Ed25519 署名を標準 base64 で返す。"""
    return base64.b64encode(private_key.sign(payload)).decode("ascii")


def signature_tag(digest: str) -> str:
    """
    イメージダイジェストに対応する署名タグ名を返す。

    例: ``sha256:abc`` -> ``sha256-abc.cosign``
    """
    return digest.replace(":", "-", 1) + SIGNATURE_TAG_SUFFIX
