"""Reversible visitor IP encryption (AES-256-GCM) for admin forensics"""
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag
from linkearn.config import Security
from logging import getLogger
import hashlib
import os
import re
from typing import Optional

logger = getLogger('linkearn.encryption')

NONCE_LENGTH = 12

_HEX_KEY = re.compile(r'^[0-9a-fA-F]{64}$')


def derive_key(raw_key: Optional[str]) -> bytes:
    """
    Build a 32 byte key from ENCRYPTION_KEY

    64 hex chars are used directly; anything else is SHA-256 derived
    """
    if raw_key and _HEX_KEY.match(raw_key):
        return bytes.fromhex(raw_key)
    return hashlib.sha256(raw_key.encode('utf-8')).digest()


class EncryptionManager:
    """Encrypts and decrypts short strings as nonce:ciphertext hex pairs"""

    def __init__(self, raw_key: Optional[str] = None):
        if raw_key:
            key = derive_key(raw_key)
        else:
            logger.warning("ENCRYPTION_KEY is not set; using an ephemeral key, encrypted IPs will not survive a restart")
            key = AESGCM.generate_key(bit_length=256)

        self.aesgcm = AESGCM(key)

    def encrypt(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return None

        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = self.aesgcm.encrypt(nonce, text.encode('utf-8'), None)
        return f"{nonce.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted_text: Optional[str]) -> Optional[str]:
        """
        Decrypt a value produced by encrypt()

        Raises:
            ValueError: If the value is malformed or was encrypted with another key
        """
        if not encrypted_text:
            return None

        parts = encrypted_text.split(':')
        if len(parts) != 2:
            raise ValueError("Invalid encrypted value format")

        try:
            nonce = bytes.fromhex(parts[0])
            ciphertext = bytes.fromhex(parts[1])
            return self.aesgcm.decrypt(nonce, ciphertext, None).decode('utf-8')
        except InvalidTag as e:
            raise ValueError("Decryption failed: authentication tag mismatch") from e


# Global encryption manager instance
encryption_manager = EncryptionManager(Security.ENCRYPTION_KEY)


def encrypt_ip(ip_address: Optional[str]) -> Optional[str]:
    return encryption_manager.encrypt(ip_address)


def decrypt_ip(encrypted_ip: Optional[str]) -> Optional[str]:
    return encryption_manager.decrypt(encrypted_ip)
