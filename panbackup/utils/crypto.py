"""
Hashing and encryption helpers for backend protocols.

- RSA (PKCS#1 v1.5) encryption of login fields, as required by the
  Cloud189 login endpoint
- MD5 digests of whole files and of fixed-size blocks, used by both
  backends to describe uploads
"""

import hashlib
from typing import List

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding


BLOCK_SIZE = 4 * 1024 * 1024  # 4MB
READ_SIZE = 1024 * 1024


class RSAEncryptor:
    """Encrypts short strings with a server-provided RSA public key."""

    def __init__(self, public_key: str, prefix: str = ''):
        """
        Initialize with a public key.

        Args:
            public_key: Base64 DER body or a full PEM document
            prefix: String prepended to every ciphertext (e.g. '{RSA}')
        """
        pem = public_key.strip()
        if not pem.startswith('-----BEGIN'):
            pem = f"-----BEGIN PUBLIC KEY-----\n{pem}\n-----END PUBLIC KEY-----"

        try:
            self._key = serialization.load_pem_public_key(pem.encode())
        except ValueError as e:
            raise ValueError(f"Invalid RSA public key: {e}") from e

        self.prefix = prefix

    def encrypt_hex(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Returns:
            prefix + lowercase hex ciphertext
        """
        ciphertext = self._key.encrypt(plaintext.encode(), padding.PKCS1v15())
        return f"{self.prefix}{ciphertext.hex()}"


def file_md5(path: str) -> str:
    """Hex MD5 digest of a whole file."""
    digest = hashlib.md5()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(READ_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def block_md5_list(path: str, block_size: int = BLOCK_SIZE) -> List[str]:
    """
    Hex MD5 digest of each fixed-size block of a file.

    An empty file yields the digest of one empty block.
    """
    blocks = []
    with open(path, 'rb') as f:
        while True:
            chunk = f.read(block_size)
            if not chunk:
                break
            blocks.append(hashlib.md5(chunk).hexdigest())

    if not blocks:
        blocks.append(hashlib.md5(b'').hexdigest())
    return blocks
