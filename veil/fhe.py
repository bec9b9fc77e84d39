"""
VEIL Confidential Compute Capabilities

Narrow interfaces to the homomorphic-encryption runtime, plus an in-process
reference service used for tests and local simulation.

    ┌──────────────────────┐   encrypt(verifier, authorized, value)
    │   EncryptionClient   │ ─────────────────────────────────────▶ EncryptedInput
    └──────────────────────┘                                        (handle, proof)

    ┌──────────────────────┐   verify_decryption(handles, verifier, on_proof)
    │  VerificationClient  │ ── decrypt off-chain ── sign ── on_proof(encoded, proof)
    └──────────────────────┘                                      │
                                                                  ▼
                                                    ledger verifies and commits

The reference service (MockFheService) does not compute homomorphically. It
models the trust boundaries of the real runtime:

    - Ciphertexts are AES-GCM encryptions bound to (verifier, authorized party)
    - The handle is the SHA-256 of the ciphertext, resolvable only here
    - Input proofs and decryption proofs are Ed25519 signatures the ledger
      checks against the service's published public keys
    - Clear values are ABI encoded as 32-byte big-endian words

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import asyncio
import hashlib
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Protocol, Sequence

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from veil.errors import DecryptionUnavailable, EncryptionUnavailable, ValidationError
from veil.observability import VeilLayer, get_logger

logger = get_logger("fhe", VeilLayer.CRYPTO)

WORD_BYTES = 32


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class EncryptedInput:
    """A ciphertext handle with the proof that it was formed correctly."""
    handle: str
    proof: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {"handle": self.handle, "proof": self.proof.hex()}


@dataclass
class DecryptionResult:
    """
    Outcome of an off-chain decryption.

    ``receipt`` is whatever the submission callback returned, normally the
    finalized verification transaction.
    """
    clear_values: Dict[str, int]
    encoded_clear_values: str
    proof: bytes
    receipt: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clear_values": dict(self.clear_values),
            "encoded_clear_values": self.encoded_clear_values,
            "proof": self.proof.hex(),
        }


ProofSubmitter = Callable[[str, bytes], Awaitable[Any]]


# =============================================================================
# CAPABILITY INTERFACES
# =============================================================================

class EncryptionClient(Protocol):
    """Produces ciphertexts with correctness proofs."""

    async def encrypt(
        self,
        verifier_address: str,
        authorized_address: str,
        value: int,
    ) -> EncryptedInput:
        """
        Encrypt ``value`` for use by ``verifier_address`` on behalf of
        ``authorized_address``.

        Raises EncryptionUnavailable if the runtime is not initialized.
        """
        ...


class VerificationClient(Protocol):
    """Decrypts handles off-chain and hands the proof to a submitter."""

    async def verify_decryption(
        self,
        handles: Sequence[str],
        verifier_address: str,
        on_proof: ProofSubmitter,
    ) -> DecryptionResult:
        """
        Decrypt ``handles`` and call ``on_proof(encoded, proof)``.

        Raises DecryptionUnavailable; errors raised by ``on_proof`` propagate
        unchanged.
        """
        ...


class ProofVerifier(Protocol):
    """Ledger-side checks of proofs produced by the runtime."""

    def verify_input_proof(
        self,
        handle: str,
        proof: bytes,
        verifier_address: str,
        authorized_address: str,
    ) -> bool:
        ...

    def verify_decryption_proof(
        self,
        handles: Sequence[str],
        encoded_clear_values: str,
        proof: bytes,
    ) -> bool:
        ...


# =============================================================================
# ABI ENCODING
# =============================================================================

def encode_clear_values(values: Sequence[int]) -> str:
    """ABI-encode unsigned integers as consecutive 32-byte words."""
    data = b"".join(int(v).to_bytes(WORD_BYTES, "big") for v in values)
    return "0x" + data.hex()


def decode_clear_values(encoded: str) -> List[int]:
    """Inverse of encode_clear_values."""
    text = encoded[2:] if encoded.startswith("0x") else encoded
    try:
        data = bytes.fromhex(text)
    except ValueError as e:
        raise ValidationError("encoded_clear_values", "not hex", encoded) from e
    if len(data) % WORD_BYTES:
        raise ValidationError("encoded_clear_values", "length is not a multiple of 32 bytes", encoded)
    return [
        int.from_bytes(data[i:i + WORD_BYTES], "big")
        for i in range(0, len(data), WORD_BYTES)
    ]


def _input_proof_message(handle: str, verifier_address: str, authorized_address: str) -> bytes:
    return f"veil-input-v1|{handle}|{verifier_address.lower()}|{authorized_address.lower()}".encode()


def _decryption_proof_message(handles: Sequence[str], encoded_clear_values: str) -> bytes:
    digest = hashlib.sha256()
    digest.update(b"veil-decrypt-v1")
    for handle in handles:
        digest.update(handle.encode())
    digest.update(encoded_clear_values.encode())
    return digest.digest()


# =============================================================================
# REFERENCE SERVICE
# =============================================================================

@dataclass
class _StoredCiphertext:
    nonce: bytes
    ciphertext: bytes
    aad: bytes


@dataclass
class MockFheService:
    """
    In-process encryption and decryption runtime.

    Implements EncryptionClient, VerificationClient and ProofVerifier. Like
    the browser runtime it stands in for, it must be initialized once per
    session before use.
    """
    value_bits: int = 32
    _initialized: bool = False
    _data_key: bytes = field(default_factory=lambda: AESGCM.generate_key(bit_length=256), repr=False)
    _input_signer: Ed25519PrivateKey = field(default_factory=Ed25519PrivateKey.generate, repr=False)
    _kms_signer: Ed25519PrivateKey = field(default_factory=Ed25519PrivateKey.generate, repr=False)
    _ciphertexts: Dict[str, _StoredCiphertext] = field(default_factory=dict, repr=False)
    encrypt_calls: int = 0
    decrypt_calls: int = 0

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        self._initialized = True
        logger.info("Confidential compute runtime initialized")

    def shutdown(self) -> None:
        self._initialized = False

    @property
    def input_verifier_key(self) -> Ed25519PublicKey:
        return self._input_signer.public_key()

    @property
    def kms_verifier_key(self) -> Ed25519PublicKey:
        return self._kms_signer.public_key()

    async def encrypt(
        self,
        verifier_address: str,
        authorized_address: str,
        value: int,
    ) -> EncryptedInput:
        if not self._initialized:
            raise EncryptionUnavailable("Confidential compute runtime is not initialized")
        if not 0 <= value < (1 << self.value_bits):
            raise ValidationError("value", f"must fit in uint{self.value_bits}", value)

        self.encrypt_calls += 1
        await asyncio.sleep(0)

        aad = f"{verifier_address.lower()}|{authorized_address.lower()}".encode()
        nonce = os.urandom(12)
        ciphertext = AESGCM(self._data_key).encrypt(
            nonce, value.to_bytes(WORD_BYTES, "big"), aad
        )
        handle = "0x" + hashlib.sha256(nonce + ciphertext).hexdigest()
        self._ciphertexts[handle] = _StoredCiphertext(nonce=nonce, ciphertext=ciphertext, aad=aad)

        proof = self._input_signer.sign(
            _input_proof_message(handle, verifier_address, authorized_address)
        )
        logger.debug("Encrypted input", operation="encrypt", handle=handle)
        return EncryptedInput(handle=handle, proof=proof)

    def _decrypt_handle(self, handle: str) -> int:
        stored = self._ciphertexts.get(handle)
        if stored is None:
            raise DecryptionUnavailable(f"Unknown ciphertext handle: {handle}")
        try:
            plaintext = AESGCM(self._data_key).decrypt(stored.nonce, stored.ciphertext, stored.aad)
        except InvalidTag as e:
            raise DecryptionUnavailable(f"Ciphertext failed authentication: {handle}") from e
        return int.from_bytes(plaintext, "big")

    async def verify_decryption(
        self,
        handles: Sequence[str],
        verifier_address: str,
        on_proof: ProofSubmitter,
    ) -> DecryptionResult:
        if not self._initialized:
            raise DecryptionUnavailable("Confidential compute runtime is not initialized")
        if not handles:
            raise ValidationError("handles", "at least one handle is required")

        self.decrypt_calls += 1
        await asyncio.sleep(0)

        values = [self._decrypt_handle(h) for h in handles]
        encoded = encode_clear_values(values)
        proof = self._kms_signer.sign(_decryption_proof_message(handles, encoded))

        receipt = await on_proof(encoded, proof)

        return DecryptionResult(
            clear_values=dict(zip(handles, values)),
            encoded_clear_values=encoded,
            proof=proof,
            receipt=receipt,
        )

    def verify_input_proof(
        self,
        handle: str,
        proof: bytes,
        verifier_address: str,
        authorized_address: str,
    ) -> bool:
        try:
            self.input_verifier_key.verify(
                proof, _input_proof_message(handle, verifier_address, authorized_address)
            )
            return True
        except InvalidSignature:
            return False

    def verify_decryption_proof(
        self,
        handles: Sequence[str],
        encoded_clear_values: str,
        proof: bytes,
    ) -> bool:
        try:
            self.kms_verifier_key.verify(
                proof, _decryption_proof_message(handles, encoded_clear_values)
            )
            return True
        except InvalidSignature:
            return False
