import os
import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from crypto_engine.aes_cbc import (
    SessionKey,
    encrypt,
    decrypt,
    generate_session_key,
    BLOCK_SIZE,
    IV_SIZE,
    KEY_SIZE,
)
from relay_client.exceptions import BadPaddingError, DecryptionError, InvalidLengthError


class TestFrameCodec:

    def test_encrypt_decrypt_roundtrip(self, sample_plaintext, session_key):
        ciphertext = encrypt(sample_plaintext, session_key)
        assert decrypt(ciphertext, session_key) == sample_plaintext

    def test_ciphertext_is_block_aligned(self, sample_plaintext, session_key):
        ciphertext = encrypt(sample_plaintext, session_key)
        assert len(ciphertext) % BLOCK_SIZE == 0
        assert len(ciphertext) > len(sample_plaintext)

    def test_block_sized_plaintext_gets_full_padding_block(self, session_key):
        ciphertext = encrypt(b"A" * BLOCK_SIZE, session_key)
        assert len(ciphertext) == 2 * BLOCK_SIZE

    def test_empty_ciphertext_raises_invalid_length(self, session_key):
        with pytest.raises(InvalidLengthError):
            decrypt(b"", session_key)

    def test_unaligned_ciphertext_raises_invalid_length(self, session_key):
        with pytest.raises(InvalidLengthError, match="not a positive multiple"):
            decrypt(os.urandom(BLOCK_SIZE + 1), session_key)

    def test_bad_padding_raises(self, session_key):
        # Last plaintext byte 0x00 is never valid PKCS#7 padding.
        block = b"\x01" * (BLOCK_SIZE - 1) + b"\x00"
        encryptor = Cipher(
            algorithms.AES(bytes(session_key.key)),
            modes.CBC(session_key.iv),
        ).encryptor()
        ciphertext = encryptor.update(block) + encryptor.finalize()

        with pytest.raises(BadPaddingError):
            decrypt(ciphertext, session_key)

    def test_decryption_errors_share_base_class(self, session_key):
        with pytest.raises(DecryptionError):
            decrypt(b"short", session_key)

    def test_frame_iv_overrides_session_iv(self, sample_plaintext, session_key):
        frame_key = session_key.with_iv(os.urandom(IV_SIZE))
        ciphertext = encrypt(sample_plaintext, frame_key)

        assert decrypt(ciphertext, frame_key) == sample_plaintext
        assert encrypt(sample_plaintext, session_key) != ciphertext

    def test_with_iv_rejects_wrong_size(self, session_key):
        with pytest.raises(InvalidLengthError, match="IV must be"):
            session_key.with_iv(os.urandom(8))

    def test_destroyed_key_cannot_be_used(self, sample_plaintext, session_key):
        session_key.destroy()
        with pytest.raises(ValueError, match="destroyed"):
            encrypt(sample_plaintext, session_key)


class TestSessionKey:

    def test_from_bytes_splits_key_and_iv(self, session_material):
        key = SessionKey.from_bytes(session_material)
        assert bytes(key.key) == session_material[:KEY_SIZE]
        assert key.iv == session_material[KEY_SIZE:]
        assert key.to_bytes() == session_material

    def test_from_bytes_rejects_wrong_length(self):
        with pytest.raises(ValueError, match="48 bytes"):
            SessionKey.from_bytes(os.urandom(40))

    def test_destroy_zeroizes_key(self, session_key):
        session_key.destroy()
        assert session_key.destroyed
        assert bytes(session_key.key) == b"\x00" * KEY_SIZE

    def test_repr_hides_key_material(self, session_key):
        assert session_key.key.hex() not in repr(session_key)
        assert "destroyed=False" in repr(session_key)

    def test_generated_keys_are_unique(self):
        keys = {generate_session_key().to_bytes() for _ in range(20)}
        assert len(keys) == 20
