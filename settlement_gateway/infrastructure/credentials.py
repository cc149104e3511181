"""Per-layer signing credentials, encrypted at rest"""

import base64
import hashlib
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from settlement_gateway.domain.exceptions import CredentialError
from settlement_gateway.domain.models import Credential, Layer

logger = logging.getLogger(__name__)

SALT_LENGTH = 64
NONCE_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
ITERATIONS = 100_000
MIN_RSA_BITS = 2048


def load_rsa_private_key(pem: str) -> rsa.RSAPrivateKey:
    """
    Parse and validate a PEM private key.

    Raises:
        CredentialError: Not PEM, not RSA, or shorter than 2048 bits
    """
    if "-----BEGIN" not in pem or "-----END" not in pem:
        raise CredentialError("Invalid key format: PEM expected")
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as e:
        raise CredentialError(f"Invalid private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CredentialError("Key must be RSA type")
    if key.key_size < MIN_RSA_BITS:
        raise CredentialError(f"Key must be at least {MIN_RSA_BITS} bits")
    return key


def public_key_fingerprint(key: rsa.RSAPrivateKey) -> str:
    """SHA-1 hex digest of the SubjectPublicKeyInfo DER"""
    der = key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha1(der).hexdigest()


def _derive_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA512(), length=KEY_LENGTH, salt=salt, iterations=ITERATIONS)
    return kdf.derive(password.encode("utf-8"))


def encrypt(text: str, password: str) -> str:
    """AES-256-GCM; output is base64(salt | nonce | tag | ciphertext)"""
    salt = os.urandom(SALT_LENGTH)
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(_derive_key(password, salt)).encrypt(nonce, text.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(salt + nonce + tag + ciphertext).decode("ascii")


def decrypt(encrypted: str, password: str) -> str:
    raw = base64.b64decode(encrypted)
    salt = raw[:SALT_LENGTH]
    nonce = raw[SALT_LENGTH:SALT_LENGTH + NONCE_LENGTH]
    tag = raw[SALT_LENGTH + NONCE_LENGTH:SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH]
    ciphertext = raw[SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH:]
    plain = AESGCM(_derive_key(password, salt)).decrypt(nonce, ciphertext + tag, None)
    return plain.decode("utf-8")


class CredentialStore:
    """
    Holds one active credential per layer.

    Readers get an immutable snapshot; save() validates the new material
    completely before swapping the reference, so a concurrent signer either
    sees the old credential or the new one, never a mix.
    """

    def __init__(self, storage_path: str | None = None, master_password: str = ""):
        self.storage_path = Path(storage_path) if storage_path else None
        self.master_password = master_password
        self._credentials: Dict[Layer, Credential] = {}
        self._lock = threading.Lock()

    def get(self, layer: Layer) -> Optional[Credential]:
        return self._credentials.get(Layer(layer))

    def save(
        self,
        layer: Layer,
        private_key: str,
        signer_id: str,
        key_fingerprint: str | None = None,
    ) -> Credential:
        """
        Validate, persist, then swap the layer's credential.

        Raises:
            CredentialError: Key material or identifiers are invalid
        """
        layer = Layer(layer)
        if not signer_id or not signer_id.strip():
            raise CredentialError("signer_id is required")

        key = load_rsa_private_key(private_key)
        fingerprint = (key_fingerprint or "").strip() or public_key_fingerprint(key)
        credential = Credential(
            layer=layer,
            private_key=private_key,
            signer_id=signer_id.strip(),
            key_fingerprint=fingerprint,
        )

        with self._lock:
            if self.storage_path is not None:
                self._write(credential)
            updated = dict(self._credentials)
            updated[layer] = credential
            self._credentials = updated

        logger.info("Credential saved", extra={"layer": layer.value, "key_fingerprint": fingerprint})
        return credential

    def load(self) -> int:
        """Load persisted credentials; unreadable files are logged and skipped"""
        if self.storage_path is None:
            return 0

        loaded: Dict[Layer, Credential] = {}
        for layer in Layer:
            path = self._path_for(layer)
            if not path.exists():
                continue
            try:
                data = json.loads(decrypt(path.read_text(encoding="utf-8"), self.master_password))
                load_rsa_private_key(data["private_key"])
                loaded[layer] = Credential(
                    layer=layer,
                    private_key=data["private_key"],
                    signer_id=data["signer_id"],
                    key_fingerprint=data["key_fingerprint"],
                )
            except (InvalidTag, ValueError, KeyError, CredentialError) as e:
                logger.error(f"Cannot load credential for {layer.value}: {e}", extra={"layer": layer.value})

        with self._lock:
            self._credentials = loaded
        return len(loaded)

    def status(self) -> Dict[str, Dict[str, object]]:
        """Public view: never includes key material"""
        snapshot = self._credentials
        return {
            layer.value: {
                "configured": layer in snapshot,
                "signer_id": snapshot[layer].signer_id if layer in snapshot else None,
                "key_fingerprint": snapshot[layer].key_fingerprint if layer in snapshot else None,
            }
            for layer in Layer
        }

    def _path_for(self, layer: Layer) -> Path:
        return self.storage_path / f"{layer.value}.keys.enc"

    def _write(self, credential: Credential) -> None:
        self.storage_path.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            {
                "private_key": credential.private_key,
                "signer_id": credential.signer_id,
                "key_fingerprint": credential.key_fingerprint,
            }
        )
        encrypted = encrypt(payload, self.master_password)

        # Write-then-rename so a crash never leaves a truncated file
        fd, tmp_path = tempfile.mkstemp(dir=self.storage_path, prefix=".keys-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(encrypted)
            os.replace(tmp_path, self._path_for(credential.layer))
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
