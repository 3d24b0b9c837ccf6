"""
署名検証パイプライン。

1. 公開鍵で各候補の署名を検証し、通過したものだけを残す
2. check_claims が有効なら、残った候補のペイロードからダイジェストと
   アノテーションを取り出し、検査対象イメージと照合する

候補ごとの失敗は ``Rejection`` として記録するだけでバッチは継続する。
あるフェーズで 1 件も残らなかった場合にのみ、理由を候補順に並べた
例外を送出する。
"""

import base64
import binascii
import logging
from typing import Callable, List, Mapping, Optional, Sequence, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from ..models.signature import (
    ImageDescriptor,
    NoMatchingClaimsError,
    NoValidSignaturesError,
    Rejection,
    RejectionKind,
    SignaturePolicy,
    SignedPayload,
)
from .claims import check_claim, extract_claim
from .registry import RegistryClient

logger = logging.getLogger(__name__)

ED25519_SIGNATURE_SIZE = 64

Check = Callable[[SignedPayload], Optional[Rejection]]


def verify_signature(
    public_key: Ed25519PublicKey, base64_signature: str, payload: bytes
) -> Optional[Rejection]:
    """
    base64 署名を payload のバイト列そのものに対して検証する。

    Returns:
        成功時は None、失敗時は SIGNATURE_INVALID の Rejection
    """
    # 改行は無視する (sign-blob の出力は末尾に改行が付く)
    text = base64_signature.replace("\r", "").replace("\n", "")
    try:
        signature = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        return Rejection(
            kind=RejectionKind.SIGNATURE_INVALID,
            message=f"invalid base64 signature: {exc}",
        )

    if len(signature) != ED25519_SIGNATURE_SIZE:
        return Rejection(
            kind=RejectionKind.SIGNATURE_INVALID,
            message="unable to verify signature",
        )
    try:
        public_key.verify(signature, payload)
    except InvalidSignature:
        return Rejection(
            kind=RejectionKind.SIGNATURE_INVALID,
            message="unable to verify signature",
        )
    return None


def _partition(
    candidates: Sequence[SignedPayload], check: Check
) -> Tuple[List[SignedPayload], List[Rejection]]:
    """候補を入力順のまま生存リストと棄却リストに振り分ける。"""
    survivors: List[SignedPayload] = []
    rejections: List[Rejection] = []
    for index, candidate in enumerate(candidates):
        rejection = check(candidate)
        if rejection is None:
            survivors.append(candidate)
            continue
        logger.debug("候補 %d を棄却 (%s): %s", index, rejection.kind.value, rejection.message)
        rejections.append(rejection)
    return survivors, rejections


def valid_signatures(
    public_key: Ed25519PublicKey, candidates: Sequence[SignedPayload]
) -> List[SignedPayload]:
    """
    公開鍵で検証できる候補だけを返す。

    Raises:
        NoValidSignaturesError: 1 件も検証できなかった場合
    """
    survivors, rejections = _partition(
        candidates,
        lambda candidate: verify_signature(
            public_key, candidate.base64_signature, candidate.payload
        ),
    )
    if not survivors:
        raise NoValidSignaturesError(failures=[r.message for r in rejections])
    return survivors


def _claim_check(descriptor: ImageDescriptor, annotations: Mapping[str, str]) -> Check:
    def check(candidate: SignedPayload) -> Optional[Rejection]:
        claim = extract_claim(descriptor.media_type, candidate.payload)
        if isinstance(claim, Rejection):
            return claim
        return check_claim(descriptor.digest, annotations, claim)

    return check


def verify_claims(
    descriptor: ImageDescriptor,
    annotations: Mapping[str, str],
    candidates: Sequence[SignedPayload],
) -> List[SignedPayload]:
    """
    ペイロードの主張がイメージのダイジェストと要求アノテーションに一致する候補を返す。

    Raises:
        NoMatchingClaimsError: 1 件も一致しなかった場合
    """
    survivors, rejections = _partition(candidates, _claim_check(descriptor, annotations))
    if not survivors:
        raise NoMatchingClaimsError(failures=[r.message for r in rejections])
    return survivors


def verify_signed_payloads(
    public_key: Ed25519PublicKey,
    descriptor: ImageDescriptor,
    annotations: Mapping[str, str],
    check_claims: bool,
    candidates: Sequence[SignedPayload],
) -> List[SignedPayload]:
    """
    署名検証と (任意で) 主張の照合を行い、すべてを通過した候補を元の順序で返す。

    Raises:
        NoValidSignaturesError: 署名フェーズで全候補が棄却された場合
        NoMatchingClaimsError: 照合フェーズで全候補が棄却された場合
    """
    valid = valid_signatures(public_key, candidates)
    if not check_claims:
        return valid
    return verify_claims(descriptor, annotations, valid)


class SignatureVerifier:
    """署名検証を行うためのインターフェース。"""

    async def verify_image(
        self,
        *,
        image: str,
        public_key: Ed25519PublicKey,
        policy: SignaturePolicy,
        correlation_id: Optional[str] = None,
    ) -> Tuple[ImageDescriptor, List[SignedPayload]]:
        """イメージの署名を検証する。"""
        raise NotImplementedError


class RegistrySignatureVerifier(SignatureVerifier):
    """レジストリから記述子と署名を取得して検証する実装。"""

    def __init__(self, registry_client: Optional[RegistryClient] = None) -> None:
        self.registry_client = registry_client or RegistryClient()

    async def verify_image(
        self,
        *,
        image: str,
        public_key: Ed25519PublicKey,
        policy: SignaturePolicy,
        correlation_id: Optional[str] = None,
    ) -> Tuple[ImageDescriptor, List[SignedPayload]]:
        """
        イメージの記述子と署名を取得し、ポリシーに従って検証する。

        Raises:
            RegistryError: 記述子/署名の取得に失敗した場合
            SignatureVerificationError: 検証を通過する署名が無い場合
        """
        descriptor, candidates = await self.registry_client.fetch(image)
        logger.info(
            "署名検証を開始: image=%s digest=%s candidates=%d correlation_id=%s",
            image,
            descriptor.digest,
            len(candidates),
            correlation_id,
        )
        try:
            verified = verify_signed_payloads(
                public_key,
                descriptor,
                policy.annotations,
                policy.check_claims,
                candidates,
            )
        except (NoValidSignaturesError, NoMatchingClaimsError) as exc:
            logger.warning(
                "署名検証に失敗: image=%s code=%s correlation_id=%s",
                image,
                exc.error_code,
                correlation_id,
            )
            raise
        logger.info(
            "署名検証に成功: image=%s verified=%d correlation_id=%s",
            image,
            len(verified),
            correlation_id,
        )
        return descriptor, verified
