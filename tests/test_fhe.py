"""
Tests for the confidential compute capabilities and the in-process runtime.
"""

import asyncio

import pytest

from veil.errors import DecryptionUnavailable, EncryptionUnavailable, ValidationError
from veil.fhe import (
    MockFheService,
    decode_clear_values,
    encode_clear_values,
)

CONTRACT = "0x" + "00" * 19 + "01"
ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20


class TestAbiEncoding:
    """Clear values travel as 32-byte big-endian words."""

    def test_single_word(self):
        encoded = encode_clear_values([42])
        assert encoded.startswith("0x")
        assert len(encoded) == 2 + 64
        assert encoded.endswith("2a")
        assert decode_clear_values(encoded) == [42]

    def test_multiple_words(self):
        assert decode_clear_values(encode_clear_values([1, 2 ** 32 - 1, 0])) == [1, 2 ** 32 - 1, 0]

    def test_rejects_partial_word(self):
        with pytest.raises(ValidationError):
            decode_clear_values("0x" + "00" * 31)

    def test_rejects_non_hex(self):
        with pytest.raises(ValidationError):
            decode_clear_values("0xzz")


class TestMockFheEncryption:
    """Encryption produces a handle and an input proof."""

    def test_requires_initialization(self):
        service = MockFheService()
        with pytest.raises(EncryptionUnavailable):
            asyncio.run(service.encrypt(CONTRACT, ALICE, 42))
        assert service.encrypt_calls == 0

    def test_encrypt_returns_handle_and_proof(self, fhe):
        encrypted = asyncio.run(fhe.encrypt(CONTRACT, ALICE, 42))
        assert encrypted.handle.startswith("0x")
        assert len(encrypted.handle) == 66
        assert fhe.verify_input_proof(encrypted.handle, encrypted.proof, CONTRACT, ALICE)

    def test_same_value_gives_distinct_handles(self, fhe):
        first = asyncio.run(fhe.encrypt(CONTRACT, ALICE, 42))
        second = asyncio.run(fhe.encrypt(CONTRACT, ALICE, 42))
        assert first.handle != second.handle

    def test_input_proof_bound_to_sender(self, fhe):
        encrypted = asyncio.run(fhe.encrypt(CONTRACT, ALICE, 42))
        assert not fhe.verify_input_proof(encrypted.handle, encrypted.proof, CONTRACT, BOB)

    def test_rejects_out_of_width_value(self, fhe):
        with pytest.raises(ValidationError):
            asyncio.run(fhe.encrypt(CONTRACT, ALICE, 2 ** 32))

    def test_shutdown_disables_encryption(self, fhe):
        fhe.shutdown()
        assert not fhe.initialized
        with pytest.raises(EncryptionUnavailable):
            asyncio.run(fhe.encrypt(CONTRACT, ALICE, 1))


class TestMockFheDecryption:
    """Decryption hands the encoded values and proof to the submitter."""

    def test_decrypt_calls_submitter(self, fhe):
        submitted = []

        async def scenario():
            encrypted = await fhe.encrypt(CONTRACT, ALICE, 42)

            async def on_proof(encoded, proof):
                submitted.append((encoded, proof))
                return "receipt"

            return encrypted.handle, await fhe.verify_decryption([encrypted.handle], CONTRACT, on_proof)

        handle, result = asyncio.run(scenario())
        assert result.clear_values == {handle: 42}
        assert result.receipt == "receipt"
        assert submitted == [(result.encoded_clear_values, result.proof)]
        assert fhe.verify_decryption_proof([handle], result.encoded_clear_values, result.proof)

    def test_decryption_proof_bound_to_values(self, fhe):
        async def scenario():
            encrypted = await fhe.encrypt(CONTRACT, ALICE, 42)

            async def on_proof(encoded, proof):
                return None

            return encrypted.handle, await fhe.verify_decryption([encrypted.handle], CONTRACT, on_proof)

        handle, result = asyncio.run(scenario())
        forged = encode_clear_values([43])
        assert not fhe.verify_decryption_proof([handle], forged, result.proof)

    def test_unknown_handle(self, fhe):
        async def on_proof(encoded, proof):
            return None

        with pytest.raises(DecryptionUnavailable):
            asyncio.run(fhe.verify_decryption(["0x" + "00" * 32], CONTRACT, on_proof))

    def test_requires_initialization(self):
        service = MockFheService()

        async def on_proof(encoded, proof):
            return None

        with pytest.raises(DecryptionUnavailable):
            asyncio.run(service.verify_decryption(["0x01"], CONTRACT, on_proof))

    def test_submitter_errors_propagate(self, fhe):
        class Boom(Exception):
            pass

        async def scenario():
            encrypted = await fhe.encrypt(CONTRACT, ALICE, 7)

            async def on_proof(encoded, proof):
                raise Boom()

            await fhe.verify_decryption([encrypted.handle], CONTRACT, on_proof)

        with pytest.raises(Boom):
            asyncio.run(scenario())
