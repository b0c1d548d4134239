# Vault - Encryption Service
#
# Master password → Encryption key (PBKDF2-HMAC-SHA256)
# Field encryption (AES-256-GCM), one fresh 16-byte nonce per call
# Blob layout: nonce(16) ‖ tag(16) ‖ ciphertext

import base64
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionFailure


class EncryptionService:
    """
    Handles key derivation and encryption/decryption for vault entries.

    Flow:
    1. User enters master password
    2. PBKDF2 derives 256-bit key from password + salt
    3. AES-256-GCM encrypts/decrypts each secret field
    4. Each blob carries its own nonce and tag, so it can be
       decrypted (or rejected) on its own

    All methods are stateless; the key is always passed in by value.
    """

    PBKDF2_ITERATIONS = 100_000
    KEY_LENGTH = 32    # 256 bits for AES-256
    SALT_LENGTH = 32   # 256-bit salt
    NONCE_LENGTH = 16  # 128-bit nonce
    TAG_LENGTH = 16    # 128-bit GCM tag

    HEADER_LENGTH = NONCE_LENGTH + TAG_LENGTH

    @staticmethod
    def derive_key(master_password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
        """
        Derive encryption key from master password using PBKDF2.

        Args:
            master_password: User's master password
            salt: Random salt (stored in master settings)
            iterations: PBKDF2 work factor (stored in master settings)

        Returns:
            256-bit encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=EncryptionService.KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(master_password.encode('utf-8'))

    @staticmethod
    def derive_subkey(key: bytes, purpose: bytes) -> bytes:
        """Derive an independent 256-bit sub-key for ``purpose`` (HKDF-SHA256)."""
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=EncryptionService.KEY_LENGTH,
            salt=None,
            info=b"blackvault:" + purpose,
        )
        return hkdf.derive(key)

    @staticmethod
    def generate_salt() -> bytes:
        """Generate cryptographically random salt."""
        return os.urandom(EncryptionService.SALT_LENGTH)

    @staticmethod
    def encrypt(key: bytes, plaintext: bytes) -> bytes:
        """
        Encrypt bytes using AES-256-GCM.

        Returns:
            nonce ‖ tag ‖ ciphertext
        """
        nonce = os.urandom(EncryptionService.NONCE_LENGTH)
        sealed = AESGCM(key).encrypt(nonce, plaintext, None)
        # AESGCM appends the tag; move it in front of the ciphertext
        ciphertext, tag = sealed[:-EncryptionService.TAG_LENGTH], sealed[-EncryptionService.TAG_LENGTH:]
        return nonce + tag + ciphertext

    @staticmethod
    def decrypt(key: bytes, blob: bytes) -> bytes:
        """
        Decrypt a blob produced by encrypt().

        Raises:
            DecryptionFailure: blob is truncated, tampered with, or was
                encrypted under a different key. No partial plaintext is
                ever returned.
        """
        if blob is None or len(blob) < EncryptionService.HEADER_LENGTH:
            raise DecryptionFailure("Ciphertext blob is truncated")

        nonce = bytes(blob[:EncryptionService.NONCE_LENGTH])
        tag = bytes(blob[EncryptionService.NONCE_LENGTH:EncryptionService.HEADER_LENGTH])
        ciphertext = bytes(blob[EncryptionService.HEADER_LENGTH:])
        try:
            return AESGCM(key).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise DecryptionFailure() from None
        except ValueError as e:
            # Wrong key length or malformed input
            raise DecryptionFailure(str(e)) from None

    @staticmethod
    def encrypt_text(key: bytes, plaintext: str) -> bytes:
        return EncryptionService.encrypt(key, plaintext.encode('utf-8'))

    @staticmethod
    def decrypt_text(key: bytes, blob: bytes) -> str:
        data = EncryptionService.decrypt(key, blob)
        try:
            return data.decode('utf-8')
        except UnicodeDecodeError:
            raise DecryptionFailure("Decrypted payload is not valid UTF-8") from None

    @staticmethod
    def keyed_digest(key: bytes, value: str) -> str:
        """HMAC-SHA256 of ``value`` under ``key``, hex encoded."""
        return hmac.new(key, value.encode('utf-8'), 'sha256').hexdigest()

    @staticmethod
    def encode_for_storage(data: bytes) -> str:
        """Encode binary data as base64 text (export bundles)."""
        return base64.b64encode(data).decode('utf-8')

    @staticmethod
    def decode_from_storage(data: str) -> bytes:
        """Decode base64 text produced by encode_for_storage()."""
        return base64.b64decode(data.encode('utf-8'), validate=True)


def derive_key(password: str, salt: bytes, iterations: int = EncryptionService.PBKDF2_ITERATIONS) -> bytes:
    return EncryptionService.derive_key(password, salt, iterations)


def encrypt(key: bytes, plaintext: bytes) -> bytes:
    return EncryptionService.encrypt(key, plaintext)


def decrypt(key: bytes, blob: bytes) -> bytes:
    return EncryptionService.decrypt(key, blob)
