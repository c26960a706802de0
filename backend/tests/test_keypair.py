import base64

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding

from crypto_engine.identity import b64_decode_any, derive_identifier
from key_store import initialize_keypair
from key_store.keypair import load_keypair
from relay_client.exceptions import KeyMaterialError, MalformedKeyError, UnsupportedKeySizeError


def _der(private_key, fmt=serialization.PrivateFormat.PKCS8):
    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=fmt,
        encryption_algorithm=serialization.NoEncryption(),
    )


class TestLoadKeypair:

    def test_load_pem(self, private_key_pem, rsa_private_key):
        keypair = load_keypair(private_key_pem)
        assert keypair.machine_id == derive_identifier(rsa_private_key.public_key())
        assert keypair.key_size == 2048

    def test_load_base64_pkcs8_der(self, fah_secret, rsa_private_key):
        keypair = load_keypair(fah_secret)
        assert keypair.machine_id == derive_identifier(rsa_private_key.public_key())

    def test_load_urlsafe_base64_without_padding(self, rsa_private_key):
        secret = base64.urlsafe_b64encode(_der(rsa_private_key)).decode("ascii").rstrip("=")
        keypair = load_keypair(secret)
        assert keypair.machine_id == derive_identifier(rsa_private_key.public_key())

    def test_load_pkcs1_der(self, rsa_private_key):
        secret = base64.b64encode(
            _der(rsa_private_key, serialization.PrivateFormat.TraditionalOpenSSL)
        ).decode("ascii")
        keypair = load_keypair(secret)
        assert keypair.machine_id == derive_identifier(rsa_private_key.public_key())

    def test_account_defaults_to_machine_key(self, private_key_pem):
        keypair = load_keypair(private_key_pem)
        assert keypair.account_id == keypair.machine_id

    def test_account_key_from_public_pem(self, private_key_pem, other_rsa_private_key):
        account_pem = other_rsa_private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        keypair = load_keypair(private_key_pem, account_pem)
        assert keypair.account_id == derive_identifier(other_rsa_private_key.public_key())
        assert keypair.account_id != keypair.machine_id

    def test_account_key_from_base64_spki(self, private_key_pem, other_rsa_private_key):
        spki = other_rsa_private_key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        keypair = load_keypair(private_key_pem, base64.b64encode(spki).decode("ascii"))
        assert keypair.account_id == derive_identifier(other_rsa_private_key.public_key())

    @pytest.mark.parametrize("material", ["", "   ", "not a key", "QUJDRA==", b"\x00\x01\x02"])
    def test_malformed_material_rejected(self, material):
        with pytest.raises(MalformedKeyError):
            load_keypair(material)

    def test_non_rsa_key_rejected(self):
        ec_key = ec.generate_private_key(ec.SECP256R1())
        pem = ec_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        with pytest.raises(MalformedKeyError, match="not an RSA key"):
            load_keypair(pem)

    def test_small_key_rejected(self, small_rsa_private_key):
        secret = base64.b64encode(_der(small_rsa_private_key)).decode("ascii")
        with pytest.raises(UnsupportedKeySizeError, match="1024 bits"):
            load_keypair(secret)

    def test_key_size_range_is_configurable(self, small_rsa_private_key):
        secret = base64.b64encode(_der(small_rsa_private_key)).decode("ascii")
        keypair = load_keypair(secret, min_bits=1024)
        assert keypair.key_size == 1024

    def test_malformed_account_key_rejected(self, private_key_pem):
        with pytest.raises(MalformedKeyError):
            load_keypair(private_key_pem, "garbage")

    def test_error_does_not_echo_material(self):
        secret = "c2VjcmV0LWtleS1ieXRlcw"
        with pytest.raises(KeyMaterialError) as exc_info:
            load_keypair(secret)
        assert secret not in str(exc_info.value)


class TestKeyPair:

    def test_repr_hides_private_key(self, keypair):
        text = repr(keypair)
        assert "private_key" not in text
        assert keypair.machine_id in text

    def test_public_key_b64_is_spki_der(self, keypair, rsa_private_key):
        der = b64_decode_any(keypair.public_key_b64())
        public_key = serialization.load_der_public_key(der)
        assert public_key.public_numbers() == rsa_private_key.public_key().public_numbers()

    def test_signature_verifies(self, keypair):
        data = b'{"time":"2025-01-01T00:00:00.000Z","session":"abc"}'
        signature = keypair.sign(data)
        keypair.public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())


class TestInitializeKeypair:

    def test_missing_secret_is_key_error(self):
        from config import Settings
        settings = Settings(_env_file=None, fah_secret=None)
        with pytest.raises(MalformedKeyError, match="No private key configured"):
            initialize_keypair(settings)

    def test_loads_from_settings(self, fah_secret, rsa_private_key):
        from config import Settings
        from key_store import get_keypair

        settings = Settings(_env_file=None, fah_secret=fah_secret)
        keypair = initialize_keypair(settings)

        assert keypair.machine_id == derive_identifier(rsa_private_key.public_key())
        assert get_keypair() is keypair
