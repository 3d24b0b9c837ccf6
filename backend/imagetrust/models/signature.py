"""署名検証で利用するモデルと例外。"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


@dataclass(frozen=True)
class SignedPayload:
    """署名対象のペイロードと、それを覆うとされる base64 署名の組。"""

    payload: bytes
    base64_signature: str


@dataclass(frozen=True)
class ImageDescriptor:
    """検査対象イメージのダイジェストとメディアタイプ。"""

    digest: str
    media_type: str


@dataclass(frozen=True)
class ExtractedClaim:
    """ペイロードから取り出したダイジェストとアノテーションの主張。"""

    digest: str
    annotations: Dict[str, str] = field(default_factory=dict)


class RejectionKind(str, Enum):
    """候補ごとの棄却理由の種別。"""

    SIGNATURE_INVALID = "signature_invalid"
    UNSUPPORTED_FORMAT = "unsupported_format"
    MALFORMED = "malformed"
    DIGEST_MISMATCH = "digest_mismatch"
    ANNOTATION_MISMATCH = "annotation_mismatch"


@dataclass(frozen=True)
class Rejection:
    """候補 1 件分の棄却結果。バッチ全体は止めない。"""

    kind: RejectionKind
    message: str


class SignatureVerificationError(Exception):
    """署名検証失敗を表す例外。"""

    error_code = "SIGNATURE_VERIFICATION_FAILED"
    header = "signature verification failed"
    remediation = "No signature satisfied the requested checks. See failures for the reason each one was rejected."

    def __init__(self, *, failures: Optional[List[str]] = None) -> None:
        self.failures = list(failures or [])
        self.message = self._format(self.header, self.failures)
        super().__init__(self.message)

    @staticmethod
    def _format(header: str, failures: List[str]) -> str:
        lines = [f"{header}:"]
        lines.extend(f"  {failure}" for failure in failures)
        return "\n".join(lines)


class NoValidSignaturesError(SignatureVerificationError):
    """公開鍵で検証できる署名が 1 件も無い場合の例外。"""

    error_code = "NO_VALID_SIGNATURES"
    header = "no matching signatures"
    remediation = (
        "No signature could be verified with the public key. "
        "Check that the key matches the one used for signing."
    )


class NoMatchingClaimsError(SignatureVerificationError):
    """有効な署名のうち、ダイジェスト/アノテーションが一致するものが無い場合の例外。"""

    error_code = "NO_MATCHING_CLAIMS"
    header = "no matching claims"
    remediation = (
        "Signatures were valid but none claimed this image digest with the requested annotations. "
        "See failures for the reason each one was rejected."
    )


class SignaturePolicy(BaseModel):
    """署名検証ポリシー。"""

    check_claims: bool = Field(
        default=True, description="ペイロードのダイジェスト/アノテーションも検証するか"
    )
    annotations: Dict[str, str] = Field(
        default_factory=dict, description="ペイロードに含まれているべきアノテーション"
    )


# ------------------------------------------------------------------
# API schemas
# ------------------------------------------------------------------


def _decode_base64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc


class DescriptorModel(BaseModel):
    """イメージ記述子のリクエスト/レスポンス表現。"""

    digest: str = Field(..., min_length=1, description="イメージのダイジェスト (例: sha256:...)")
    media_type: str = Field(..., min_length=1, description="ペイロード形式を示すメディアタイプ")

    def to_descriptor(self) -> ImageDescriptor:
        return ImageDescriptor(digest=self.digest, media_type=self.media_type)

    @classmethod
    def from_descriptor(cls, descriptor: ImageDescriptor) -> "DescriptorModel":
        return cls(digest=descriptor.digest, media_type=descriptor.media_type)


class SignedPayloadModel(BaseModel):
    """署名付きペイロードの API 表現。payload は標準 base64。"""

    payload: str = Field(..., description="base64 エンコードされたペイロード")
    base64_signature: str = Field(..., description="base64 エンコードされた署名")

    @field_validator("payload")
    @classmethod
    def _payload_must_be_base64(cls, value: str) -> str:
        _decode_base64(value)
        return value

    def to_signed_payload(self) -> SignedPayload:
        return SignedPayload(
            payload=_decode_base64(self.payload),
            base64_signature=self.base64_signature,
        )

    @classmethod
    def from_signed_payload(cls, signed: SignedPayload) -> "SignedPayloadModel":
        return cls(
            payload=base64.b64encode(signed.payload).decode("ascii"),
            base64_signature=signed.base64_signature,
        )


class VerifyRequest(BaseModel):
    """取得済みの署名群を検証するリクエスト。"""

    public_key: Optional[str] = Field(
        default=None, description="公開鍵 (PEM / base64 DER)。省略時は設定値を使用"
    )
    descriptor: DescriptorModel
    signatures: List[SignedPayloadModel] = Field(default_factory=list)
    annotations: Dict[str, str] = Field(default_factory=dict)
    check_claims: bool = True


class VerifyImageRequest(BaseModel):
    """レジストリから署名を取得して検証するリクエスト。"""

    image: str = Field(..., min_length=1, description="イメージ参照 (例: registry/repo:tag)")
    public_key: Optional[str] = Field(default=None)
    annotations: Dict[str, str] = Field(default_factory=dict)
    check_claims: bool = True


class VerifyResponse(BaseModel):
    """検証を通過した署名付きペイロード。"""

    verified: List[SignedPayloadModel]
    count: int


class VerifyImageResponse(VerifyResponse):
    """イメージ検証の結果。"""

    image: str
    descriptor: DescriptorModel


class PayloadRequest(BaseModel):
    """simple signing ペイロード生成のリクエスト。"""

    descriptor: DescriptorModel
    annotations: Optional[Dict[str, str]] = None
    docker_reference: Optional[str] = None


class PayloadResponse(BaseModel):
    """生成したペイロード (base64) とそのメディアタイプ。"""

    payload: str
    media_type: str
