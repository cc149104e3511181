"""Unit tests for the credential store"""

import hashlib
import json
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from settlement_gateway.domain.exceptions import CredentialError
from settlement_gateway.domain.models import Layer
from settlement_gateway.infrastructure.credentials import CredentialStore, decrypt, encrypt


def _pem(key) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def test_encrypt_decrypt_with_same_password():
    sealed = encrypt("secret material", "pw")

    assert "secret material" not in sealed
    assert decrypt(sealed, "pw") == "secret material"


def test_rejects_non_pem():
    with pytest.raises(CredentialError, match="PEM"):
        CredentialStore().save(Layer.SANDBOX, "not a key", "signer")


def test_rejects_short_rsa_key():
    short = rsa.generate_private_key(public_exponent=65537, key_size=1024)
    with pytest.raises(CredentialError, match="2048"):
        CredentialStore().save(Layer.SANDBOX, _pem(short), "signer")


def test_rejects_non_rsa_key():
    with pytest.raises(CredentialError, match="RSA"):
        CredentialStore().save(Layer.SANDBOX, _pem(ec.generate_private_key(ec.SECP256R1())), "signer")


def test_rejects_blank_signer_id(rsa_private_pem: str):
    with pytest.raises(CredentialError):
        CredentialStore().save(Layer.SANDBOX, rsa_private_pem, "  ")


def test_failed_save_keeps_previous_credential(credentials: CredentialStore):
    with pytest.raises(CredentialError):
        credentials.save(Layer.SANDBOX, "garbage", "other-signer")

    assert credentials.get(Layer.SANDBOX).signer_id == "test-signer"


def test_fingerprint_defaults_to_public_key_sha1(rsa_private_pem: str):
    credential = CredentialStore().save(Layer.LIVE, rsa_private_pem, "signer")

    key = serialization.load_pem_private_key(rsa_private_pem.encode("utf-8"), password=None)
    der = key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    assert credential.key_fingerprint == hashlib.sha1(der).hexdigest()


def test_persisted_credentials_reload(tmp_path: Path, rsa_private_pem: str):
    """Saved keys are encrypted on disk and readable by a fresh store"""
    store = CredentialStore(str(tmp_path), master_password="master")
    store.save(Layer.SANDBOX, rsa_private_pem, "signer-1", key_fingerprint="thumb-1")

    stored = (tmp_path / "sandbox.keys.enc").read_text(encoding="utf-8")
    assert "PRIVATE KEY" not in stored
    assert json.loads(decrypt(stored, "master"))["signer_id"] == "signer-1"

    fresh = CredentialStore(str(tmp_path), master_password="master")
    assert fresh.load() == 1
    assert fresh.get(Layer.SANDBOX).key_fingerprint == "thumb-1"
    assert fresh.get(Layer.LIVE) is None


def test_wrong_master_password_skips_file(tmp_path: Path, rsa_private_pem: str):
    CredentialStore(str(tmp_path), master_password="right").save(Layer.SANDBOX, rsa_private_pem, "signer")

    fresh = CredentialStore(str(tmp_path), master_password="wrong")
    assert fresh.load() == 0
    assert fresh.get(Layer.SANDBOX) is None


def test_status_never_exposes_key_material(credentials: CredentialStore):
    status = credentials.status()

    assert status["sandbox"] == {"configured": True, "signer_id": "test-signer", "key_fingerprint": "thumb-sandbox"}
    assert status["live"]["configured"] is False
    assert "PRIVATE" not in json.dumps(status)
