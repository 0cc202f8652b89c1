"""
pos_rotation/codecs/vault_codec.py - HashiCorp Vault transit codec using hvac.

Authentication: AppRole (role_id + secret_id) or a plain token for local dev
Secret engine: transit at mount point "transit", one named key for all POS credentials
Ciphertext format: Vault's own "vault:v<N>:..." strings, so key rotation on the
Vault side keeps old ciphertexts readable.
"""
import base64
import binascii
import logging

import hvac
import requests
from hvac.exceptions import VaultError

from pos_rotation.codecs import CodecError, SecretCodec

log = logging.getLogger(__name__)

MOUNT_POINT = "transit"


class VaultTransitCodec(SecretCodec):
    """
    Vault transit encryption.

    Authenticates via AppRole using:
      VAULT_ADDR, VAULT_ROLE_ID_ROTATION_AGENT, VAULT_SECRET_ID_ROTATION_AGENT
    falling back to VAULT_TOKEN.
    """

    def __init__(
        self,
        vault_addr: str,
        key_name: str,
        role_id: str | None = None,
        secret_id: str | None = None,
        token: str | None = None,
    ) -> None:
        self.vault_addr = vault_addr
        self.key_name = key_name
        self.role_id = role_id
        self.secret_id = secret_id
        self.token = token
        self._client: hvac.Client | None = None

    def _get_client(self) -> hvac.Client:
        """Return an authenticated Vault client, re-authenticating if needed."""
        if self._client is None or not self._client.is_authenticated():
            client = hvac.Client(url=self.vault_addr)
            if self.role_id and self.secret_id:
                client.auth.approle.login(
                    role_id=self.role_id,
                    secret_id=self.secret_id,
                )
            elif self.token:
                client.token = self.token
            else:
                raise CodecError("No Vault credentials configured (AppRole or VAULT_TOKEN)", operation="init")
            self._client = client
        return self._client

    def encrypt(self, plaintext: str) -> str:
        encoded = base64.b64encode(plaintext.encode()).decode()
        try:
            response = self._get_client().secrets.transit.encrypt_data(
                name=self.key_name, plaintext=encoded, mount_point=MOUNT_POINT
            )
        except (VaultError, requests.RequestException) as e:
            raise CodecError(f"Vault transit encrypt failed: {type(e).__name__}", operation="encrypt") from e
        try:
            return response["data"]["ciphertext"]
        except (KeyError, TypeError):
            raise CodecError("Vault transit encrypt returned no ciphertext", operation="encrypt") from None

    def decrypt(self, ciphertext: str) -> str:
        try:
            response = self._get_client().secrets.transit.decrypt_data(
                name=self.key_name, ciphertext=ciphertext, mount_point=MOUNT_POINT
            )
        except (VaultError, requests.RequestException) as e:
            log.error(f"Vault transit decrypt failed for key {self.key_name}: {type(e).__name__}")
            raise CodecError(f"Vault transit decrypt failed: {type(e).__name__}", operation="decrypt") from e
        try:
            return base64.b64decode(response["data"]["plaintext"]).decode()
        except (KeyError, TypeError, binascii.Error, UnicodeDecodeError) as e:
            raise CodecError(f"Vault transit decrypt returned unusable plaintext ({type(e).__name__})", operation="decrypt") from None
