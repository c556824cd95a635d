"""
SSH key pairs generated for each job.

The public key is injected into the Fargate task's container so that the SSH
server accepts it; the private key is stored in the task metadata and used by
the run stage to authenticate.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import asyncssh

from .errors import DriverError, ErrorKind, wrap

logger = logging.getLogger(__name__)

DEFAULT_BIT_SIZE = 4096


@dataclass(frozen=True)
class KeyPair:
    """Public key in authorized_keys format and PEM encoded private key."""

    public_key: bytes
    private_key: bytes


class KeyFactory(ABC):
    """Abstract base class for key pair generators."""

    @abstractmethod
    def create(self, bit_size: int = DEFAULT_BIT_SIZE) -> KeyPair:
        """
        Generate a new key pair.

        Args:
            bit_size: Size of the generated key

        Returns:
            The generated KeyPair
        """
        pass


class RSAKeyFactory(KeyFactory):
    """Generates RSA key pairs usable for SSH public key authentication."""

    def create(self, bit_size: int = DEFAULT_BIT_SIZE) -> KeyPair:
        logger.debug(f"Generating new {bit_size} bit RSA key pair")

        try:
            key = asyncssh.generate_private_key("ssh-rsa", key_size=bit_size)
        except (asyncssh.KeyGenerationError, ValueError) as e:
            raise wrap("generating the private key", e, ErrorKind.INVALID_CREDENTIAL) from e

        private_key = key.export_private_key("pkcs1-pem")
        # A key that can't be read back would never authenticate the run stage
        parse_private_key(private_key)

        try:
            public_key = key.export_public_key("openssh")
        except (asyncssh.KeyExportError, ValueError) as e:
            raise wrap("generating the public key", e) from e

        logger.debug("Key pair generated with success")
        return KeyPair(public_key=public_key, private_key=private_key)


def parse_private_key(data: bytes) -> asyncssh.SSHKey:
    """
    Load a private key for SSH authentication.

    Raises:
        DriverError: (INVALID_CREDENTIAL) if the key material is missing or malformed
    """
    if not data:
        raise DriverError("invalid private key: empty key", ErrorKind.INVALID_CREDENTIAL)
    try:
        return asyncssh.import_private_key(data)
    except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError, ValueError) as e:
        raise wrap("invalid private key", e, ErrorKind.INVALID_CREDENTIAL) from e
