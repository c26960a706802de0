import base64
import os
import sys
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

backend_path = Path(__file__).parent.parent
sys.path.insert(0, str(backend_path))

os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("FAH_USERNAME", "")


def _generate(bits: int) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=bits)


@pytest.fixture(scope="session")
def rsa_private_key():
    return _generate(2048)


@pytest.fixture(scope="session")
def other_rsa_private_key():
    return _generate(2048)


@pytest.fixture(scope="session")
def small_rsa_private_key():
    return _generate(1024)


@pytest.fixture
def private_key_pem(rsa_private_key):
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture
def fah_secret(rsa_private_key):
    """Browser-style secret: standard base64 of PKCS#8 DER."""
    der = rsa_private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return base64.b64encode(der).decode("ascii")


@pytest.fixture
def keypair(private_key_pem):
    from key_store.keypair import load_keypair
    return load_keypair(private_key_pem)


@pytest.fixture
def session_material():
    return os.urandom(48)


@pytest.fixture
def session_key(session_material):
    from crypto_engine.aes_cbc import SessionKey
    return SessionKey.from_bytes(session_material)


@pytest.fixture
def sample_plaintext():
    return b'{"machine": "rig-01", "slots": [{"id": 0, "percent": 42.5, "kind": "CPU"}]}'


@pytest.fixture
def snapshot_store():
    from aggregator.snapshot_store import SnapshotStore
    return SnapshotStore()
