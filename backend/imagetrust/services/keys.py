"""Ed25519 鍵の読み込みヘルパー。"""

import base64
import binascii
import logging
import os
import re
from typing import Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

logger = logging.getLogger(__name__)

PUBLIC_KEY_PEM_TYPE = "PUBLIC KEY"
_PEM_HEADER = re.compile(r"-----BEGIN ([A-Z0-9 ]+)-----")


class KeyLoadError(ValueError):
    """鍵の読み込み・解析に失敗した場合の例外。"""


def _pem_type(pem: bytes) -> Optional[str]:
    match = _PEM_HEADER.search(pem.decode("ascii", errors="replace"))
    return match.group(1) if match else None


def _as_ed25519(key: object) -> Ed25519PublicKey:
    if not isinstance(key, Ed25519PublicKey):
        raise KeyLoadError("invalid public key")
    return key


def load_public_key_pem(pem: bytes) -> Ed25519PublicKey:
    """SubjectPublicKeyInfo 形式の PEM から公開鍵を読み込む。"""
    pem_type = _pem_type(pem)
    if pem_type is None:
        raise KeyLoadError("PEM decode failed")
    if pem_type != PUBLIC_KEY_PEM_TYPE:
        raise KeyLoadError(f"not public: {pem_type!r}")
    try:
        key = serialization.load_pem_public_key(pem)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise KeyLoadError(f"failed to parse public key: {exc}") from exc
    return _as_ed25519(key)


def load_public_key_inline(key_text: str) -> Ed25519PublicKey:
    """
    PEM 文字列または DER (SubjectPublicKeyInfo) の標準 base64 から公開鍵を読み込む。

    ファイルシステムには触れないため、リクエストで渡された鍵はこちらで読む。

    Raises:
        KeyLoadError: 解析できない、または Ed25519 鍵でない場合
    """
    key_text = key_text.strip()
    if not key_text:
        raise KeyLoadError("public key is empty")

    if key_text.startswith("-----BEGIN"):
        return load_public_key_pem(key_text.encode("ascii", errors="replace"))

    try:
        der = base64.b64decode(key_text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KeyLoadError("public key is neither PEM nor base64 DER") from exc
    try:
        key = serialization.load_der_public_key(der)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise KeyLoadError("failed to parse public key") from exc
    return _as_ed25519(key)


def load_public_key(key_ref: str) -> Ed25519PublicKey:
    """
    設定された公開鍵参照を解決して Ed25519 公開鍵を返す。

    key_ref は PEM ファイルへのパス、または load_public_key_inline が
    受け付ける形式のいずれか。

    Raises:
        KeyLoadError: 参照を解決できない、または Ed25519 鍵でない場合
    """
    key_ref = key_ref.strip()
    if not key_ref:
        raise KeyLoadError("public key reference is empty")

    if os.path.isfile(key_ref):
        logger.debug("公開鍵をファイルから読み込みます: %s", key_ref)
        try:
            with open(key_ref, "rb") as handle:
                return load_public_key_pem(handle.read())
        except OSError as exc:
            raise KeyLoadError(f"failed to read public key file: {exc}") from exc

    return load_public_key_inline(key_ref)


def public_key_from_raw(raw: bytes) -> Ed25519PublicKey:
    """32 バイトの生鍵から公開鍵を組み立てる。"""
    try:
        return Ed25519PublicKey.from_public_bytes(raw)
    except ValueError as exc:
        raise KeyLoadError(f"invalid raw public key: {exc}") from exc


def load_private_key(pem: bytes, passphrase: Optional[bytes] = None) -> Ed25519PrivateKey:
    """PKCS#8 PEM (パスフレーズ暗号化も可) から Ed25519 秘密鍵を読み込む。"""
    try:
        key = serialization.load_pem_private_key(pem, password=passphrase or None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyLoadError(f"failed to load private key: {exc}") from exc
    if not isinstance(key, Ed25519PrivateKey):
        raise KeyLoadError("invalid private key")
    return key


def public_key_pem(key: Union[Ed25519PublicKey, Ed25519PrivateKey]) -> bytes:
    """公開鍵（秘密鍵なら対応する公開鍵）を SubjectPublicKeyInfo PEM で返す。"""
    if isinstance(key, Ed25519PrivateKey):
        key = key.public_key()
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
