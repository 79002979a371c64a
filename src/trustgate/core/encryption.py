"""
TrustGate Encryption Module
AES-256-GCM encryption of MFA shared secrets at rest
"""

import base64
import binascii
import json
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from trustgate.core.logging import LoggerMixin


class EncryptionError(Exception):
    """Encryption-related errors"""
    pass


class SecretCipher(LoggerMixin):
    """
    Seals short secrets (TOTP seeds) with AES-256-GCM.

    The sealed form is a base64 JSON package carrying the algorithm, nonce and
    ciphertext. ``key_id`` is bound as associated data so a sealed secret
    cannot be moved to another record. ``digest`` gives a keyed, deterministic
    HMAC-SHA256 for values that are looked up rather than decrypted (backup
    codes); its key is derived from the same master key.
    """

    ALGORITHM = "AES-256-GCM"
    DIGEST_INFO = b"trustgate:digest:v1"

    def __init__(self, key: Optional[bytes] = None):
        if key is None:
            key = AESGCM.generate_key(bit_length=256)
            self.logger.warning(
                "Generated ephemeral encryption key - set TRUSTGATE_SECRET_ENCRYPTION_KEY to persist secrets"
            )
        if len(key) != 32:
            raise EncryptionError("AES-256-GCM requires a 32 byte key")
        self._aesgcm = AESGCM(key)
        self._digest_key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=self.DIGEST_INFO,
        ).derive(key)

    def digest(self, value: str) -> str:
        mac = hmac.HMAC(self._digest_key, hashes.SHA256())
        mac.update(value.encode("utf-8"))
        return mac.finalize().hex()

    @classmethod
    def from_b64(cls, encoded_key: Optional[str]) -> "SecretCipher":
        if not encoded_key:
            return cls()
        try:
            return cls(base64.b64decode(encoded_key))
        except (binascii.Error, ValueError) as e:
            raise EncryptionError(f"Invalid encryption key: {e}")

    def encrypt(self, plaintext: str, key_id: str) -> str:
        nonce = secrets.token_bytes(12)  # 96-bit nonce for GCM
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), key_id.encode("utf-8"))
        package = {
            "version": "1.0",
            "algorithm": self.ALGORITHM,
            "nonce": base64.b64encode(nonce).decode("utf-8"),
            "ciphertext": base64.b64encode(ciphertext).decode("utf-8"),
        }
        return base64.b64encode(json.dumps(package).encode("utf-8")).decode("utf-8")

    def decrypt(self, sealed: str, key_id: str) -> str:
        try:
            package = json.loads(base64.b64decode(sealed).decode("utf-8"))
            if package.get("algorithm") != self.ALGORITHM:
                raise EncryptionError(f"Unsupported algorithm: {package.get('algorithm')}")
            nonce = base64.b64decode(package["nonce"])
            ciphertext = base64.b64decode(package["ciphertext"])
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, key_id.encode("utf-8"))
            return plaintext.decode("utf-8")
        except EncryptionError:
            raise
        except (InvalidTag, KeyError, ValueError, binascii.Error) as e:
            self.logger.error(f"Secret decryption failed for {key_id}: {type(e).__name__}")
            raise EncryptionError("Secret decryption failed")
