# Services package

from .keys import KeyLoadError
from .registry import RegistryClient, RegistryError
from .signature_verifier import (
    RegistrySignatureVerifier,
    SignatureVerifier,
    verify_signed_payloads,
)

__all__ = [
    "KeyLoadError",
    "RegistryClient",
    "RegistryError",
    "RegistrySignatureVerifier",
    "SignatureVerifier",
    "verify_signed_payloads",
]
