"""
pos_rotation/codecs/kms_codec.py - AWS KMS codec using boto3.

This is the PRIMARY PRODUCTION codec.

Authentication: boto3 credential chain (SSO, instance role, env vars, ~/.aws/credentials)
Ciphertext format: base64 of the KMS CiphertextBlob (the blob embeds the key id,
so decrypt needs no KeyId)
"""
import base64
import binascii
import logging
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pos_rotation.codecs import CodecError, SecretCodec

log = logging.getLogger(__name__)


class KmsCodec(SecretCodec):

    def __init__(self, key_id: str | None, region: str = "us-east-1", profile: str | None = None) -> None:
        if not key_id:
            raise CodecError("KMS_KEY_ID is required for the kms codec", operation="init")
        self._key_id = key_id
        session_kwargs: dict[str, Any] = {"region_name": region}
        if profile:
            session_kwargs["profile_name"] = profile
        self._session = boto3.Session(**session_kwargs)
        self._kms = self._session.client("kms")

    def encrypt(self, plaintext: str) -> str:
        try:
            resp = self._kms.encrypt(KeyId=self._key_id, Plaintext=plaintext.encode())
        except (ClientError, BotoCoreError) as e:
            raise CodecError(f"KMS encrypt failed: {type(e).__name__}", operation="encrypt") from e
        try:
            return base64.b64encode(resp["CiphertextBlob"]).decode()
        except (KeyError, TypeError):
            raise CodecError("KMS encrypt returned no CiphertextBlob", operation="encrypt") from None

    def decrypt(self, ciphertext: str) -> str:
        try:
            blob = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError):
            raise CodecError("Secret reference is not valid base64", operation="decrypt") from None
        try:
            resp = self._kms.decrypt(CiphertextBlob=blob)
        except (ClientError, BotoCoreError) as e:
            log.error(f"KMS decrypt failed: {type(e).__name__}")
            raise CodecError(f"KMS decrypt failed: {type(e).__name__}", operation="decrypt") from e
        try:
            return resp["Plaintext"].decode()
        except (KeyError, AttributeError, UnicodeDecodeError) as e:
            raise CodecError(f"KMS decrypt returned unusable plaintext ({type(e).__name__})", operation="decrypt") from None
