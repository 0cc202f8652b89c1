"""
pos_rotation/codecs/__init__.py - Abstract base class for secret codecs.

A codec turns the stored, encrypted secret reference of a credential into the
provider credentials the job needs, and encrypts the renewed token before it
is handed to the atomic swap. Fernet (local key), Vault transit and AWS KMS
implement the same interface, so the rotation logic is codec-agnostic.
"""
import json
from abc import ABC, abstractmethod

from pos_rotation.models import ProviderCredentials


class CodecError(Exception):
    """Raised when a secret cannot be encrypted or decrypted. Never carries plaintext."""

    def __init__(self, message: str, operation: str = "unknown") -> None:
        self.operation = operation
        super().__init__(message)


class SecretCodec(ABC):
    """Abstract interface for secret encryption backends."""

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret for storage.

        Returns:
            Ciphertext as a string safe for a text column.
        """
        ...

    @abstractmethod
    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a value produced by encrypt().

        Raises:
            CodecError: If the ciphertext is malformed or the key is wrong.
        """
        ...

    def decrypt_credentials(self, secret_ref: str) -> ProviderCredentials:
        """Decrypt a secret reference holding ``{"api_key", "api_secret", "env"}``."""
        plaintext = self.decrypt(secret_ref)
        try:
            data = json.loads(plaintext)
            return ProviderCredentials(
                api_key=data["api_key"],
                api_secret=data["api_secret"],
                env=data.get("env", "staging"),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise CodecError(
                f"Secret reference does not hold provider credentials ({type(e).__name__})",
                operation="decrypt",
            ) from None

    def encrypt_credentials(self, credentials: ProviderCredentials) -> str:
        return self.encrypt(json.dumps({
            "api_key": credentials.api_key,
            "api_secret": credentials.api_secret,
            "env": credentials.env,
        }))

    def encrypt_token(self, token: str) -> str:
        if not token:
            raise CodecError("Cannot encrypt an empty token", operation="encrypt")
        return self.encrypt(token)


def get_codec(name: str, settings) -> SecretCodec:
    if name == "fernet":
        from pos_rotation.codecs.fernet_codec import FernetCodec
        return FernetCodec(settings.encryption_key)
    elif name == "vault":
        from pos_rotation.codecs.vault_codec import VaultTransitCodec
        return VaultTransitCodec(
            vault_addr=settings.vault_addr,
            key_name=settings.vault_transit_key,
            role_id=settings.vault_role_id,
            secret_id=settings.vault_secret_id,
            token=settings.vault_token,
        )
    elif name == "kms":
        from pos_rotation.codecs.kms_codec import KmsCodec
        return KmsCodec(key_id=settings.kms_key_id, region=settings.aws_region)
    raise ValueError(f"Unknown secret codec: {name}. Use 'fernet', 'vault' or 'kms'.")
