"""
pos_rotation/codecs/fernet_codec.py - Local symmetric codec using Fernet.

Key comes from ENCRYPTION_KEY (urlsafe base64, 32 bytes). Used for local
development, tests, and deployments where the database and the key live in
different trust zones.
"""
import logging

from cryptography.fernet import Fernet, InvalidToken

from pos_rotation.codecs import CodecError, SecretCodec

log = logging.getLogger(__name__)


class FernetCodec(SecretCodec):

    def __init__(self, key: str | bytes | None) -> None:
        if not key:
            raise CodecError(
                "Encryption key not configured. Set ENCRYPTION_KEY environment variable.",
                operation="init",
            )
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise CodecError(f"Invalid ENCRYPTION_KEY: {e}", operation="init") from None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            log.error("Fernet decryption failed: invalid token or wrong key")
            raise CodecError("Secret could not be decrypted with the configured key", operation="decrypt") from None
        except UnicodeDecodeError:
            raise CodecError("Decrypted secret is not valid UTF-8", operation="decrypt") from None
