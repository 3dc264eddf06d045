"""
Encryption of provider credentials at rest.
Uses Fernet symmetric encryption with key rotation support.
"""

import base64
import logging
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import String, TypeDecorator

from skillsync.core.config import settings

logger = logging.getLogger("skillsync.encryption")


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""
    pass


class FieldEncryptor:
    """
    Encrypts OAuth access and refresh tokens before they reach storage.

    ENCRYPTION_KEY may hold several comma-separated keys: the first one
    encrypts, any of them decrypts (MultiFernet), which allows rotation.

    Usage:
        encryptor = get_encryptor()
        stored = encryptor.encrypt(access_token)
        access_token = encryptor.decrypt(stored)
    """

    def __init__(self, encryption_key: Optional[str] = None):
        self._fernet: Union[Fernet, MultiFernet] = self._build(encryption_key or settings.ENCRYPTION_KEY)

    def _build(self, encryption_key: Optional[str]) -> Union[Fernet, MultiFernet]:
        if not encryption_key:
            if settings.IS_PRODUCTION:
                raise EncryptionError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            logger.warning(
                "ENCRYPTION_KEY not set. Using derived key from SECRET_KEY. "
                "Set ENCRYPTION_KEY in production for proper security."
            )
            encryption_key = self._derive_key_from_secret(settings.SECRET_KEY)

        keys = [k.strip() for k in encryption_key.split(",") if k.strip()]
        try:
            fernets = [Fernet(k.encode()) for k in keys]
        except ValueError as e:
            raise EncryptionError(f"Invalid ENCRYPTION_KEY: {e}") from e

        logger.info(f"Credential encryption initialized with {len(keys)} key(s)")
        if len(fernets) == 1:
            return fernets[0]
        return MultiFernet(fernets)

    @staticmethod
    def _derive_key_from_secret(secret: str) -> str:
        """Derive a Fernet key from the SECRET_KEY using PBKDF2."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"skillsync_dev_salt_v1",
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(secret.encode())).decode()

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if not plaintext:
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored value.

        Raises:
            EncryptionError: If the value was encrypted with an unknown key or is corrupted
        """
        if not ciphertext:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Decryption failed: Invalid token (wrong key or corrupted data)")
            raise EncryptionError("Failed to decrypt data: Invalid encryption key or corrupted data")

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet encryption key."""
        return Fernet.generate_key().decode()


_encryptor: Optional[FieldEncryptor] = None


def get_encryptor() -> FieldEncryptor:
    """Get the global encryptor instance."""
    global _encryptor
    if _encryptor is None:
        _encryptor = FieldEncryptor()
    return _encryptor


class EncryptedString(TypeDecorator):
    """
    SQLAlchemy type that transparently encrypts/decrypts string values.

    Usage:
        class IntegrationConnection(Base):
            access_token = Column(EncryptedString(2048))
    """

    impl = String
    cache_ok = True

    def __init__(self, length: int = 1024, *args, **kwargs):
        # Encrypted values are longer than plain text
        super().__init__(length, *args, **kwargs)

    def process_bind_param(self, value, dialect):
        if value is not None:
            return get_encryptor().encrypt(str(value))
        return value

    def process_result_value(self, value, dialect):
        if value is not None:
            return get_encryptor().decrypt(value)
        return value
