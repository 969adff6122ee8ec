# multichat/message_cipher.py
import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from multichat.errors import DecryptionFailed

_NONCE_BYTES = 12


class MessageCipher:
    """
    AES-256-GCM encryption of message content at rest.
    Stored form: base64(nonce || ciphertext+tag). The conversation id is bound
    as associated data so a row copied into another conversation fails to open.
    """

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("MessageCipher needs a 32-byte key (AES-256)")
        self._aead = AESGCM(key)

    @classmethod
    def from_b64(cls, key_b64: str) -> "MessageCipher":
        if not key_b64:
            raise ValueError("MESSAGE_ENCRYPTION_KEY is not set")
        return cls(base64.b64decode(key_b64))

    @staticmethod
    def generate_key() -> str:
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")

    def encrypt(self, plaintext: str, *, conversation_id: str) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        ct = self._aead.encrypt(nonce, plaintext.encode("utf-8"), conversation_id.encode("utf-8"))
        return base64.b64encode(nonce + ct).decode("ascii")

    def decrypt(self, token: str, *, conversation_id: str) -> str:
        try:
            raw = base64.b64decode(token, validate=True)
            if len(raw) <= _NONCE_BYTES:
                raise DecryptionFailed("ciphertext too short")
            nonce, ct = raw[:_NONCE_BYTES], raw[_NONCE_BYTES:]
            return self._aead.decrypt(nonce, ct, conversation_id.encode("utf-8")).decode("utf-8")
        except DecryptionFailed:
            raise
        except (InvalidTag, ValueError, UnicodeDecodeError) as e:
            raise DecryptionFailed(f"cannot decrypt message content: {e.__class__.__name__}") from e
