from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from apigate.config import Settings, SigningAlgorithm
from apigate.logging import get_logger

logger = get_logger(__name__)

_HASHES = {
    SigningAlgorithm.RS256: hashes.SHA256,
    SigningAlgorithm.RS384: hashes.SHA384,
    SigningAlgorithm.RS512: hashes.SHA512,
}


class Signer:
    """Produces and verifies RSA PKCS#1 v1.5 signatures over byte strings."""

    def __init__(
        self,
        private_key: rsa.RSAPrivateKey,
        public_key: Optional[rsa.RSAPublicKey] = None,
        *,
        algorithm: SigningAlgorithm = SigningAlgorithm.RS256,
    ) -> None:
        self.private_key = private_key
        self.public_key = public_key or private_key.public_key()
        self.algorithm = SigningAlgorithm(algorithm)
        self._hash = _HASHES[self.algorithm]

    @classmethod
    def generate(
        cls, *, algorithm: SigningAlgorithm = SigningAlgorithm.RS256, key_size: int = 2048
    ) -> "Signer":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return cls(private_key, algorithm=algorithm)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Signer":
        """Load the configured key pair, generating and persisting one if absent."""

        if settings.jwt_private_key_path:
            private_path = Path(settings.jwt_private_key_path)
        else:
            private_path = Path(settings.shared_fs_root) / "keys" / "signing_key.pem"
        public_path = (
            Path(settings.jwt_public_key_path) if settings.jwt_public_key_path else None
        )

        if private_path.exists():
            private_key = serialization.load_pem_private_key(
                private_path.read_bytes(), password=None
            )
            if not isinstance(private_key, rsa.RSAPrivateKey):
                raise RuntimeError(f"signing key at {private_path} is not an RSA key")
            public_key = None
            if public_path and public_path.exists():
                loaded = serialization.load_pem_public_key(public_path.read_bytes())
                if not isinstance(loaded, rsa.RSAPublicKey):
                    raise RuntimeError(f"public key at {public_path} is not an RSA key")
                public_key = loaded
            return cls(private_key, public_key, algorithm=settings.jwt_algorithm)

        signer = cls.generate(algorithm=settings.jwt_algorithm)
        signer.persist(private_path, public_path or private_path.with_suffix(".pub"))
        logger.info("signing_key_generated", path=str(private_path))
        return signer

    def persist(self, private_path: Path, public_path: Path) -> None:
        private_path.parent.mkdir(parents=True, exist_ok=True)
        pem = self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        fd = os.open(str(private_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, pem)
        finally:
            os.close(fd)
        public_path.write_bytes(
            self.public_key.public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        )

    def sign(self, data: bytes) -> bytes:
        return self.private_key.sign(data, padding.PKCS1v15(), self._hash())

    def verify(self, data: bytes, signature: bytes) -> bool:
        try:
            self.public_key.verify(signature, data, padding.PKCS1v15(), self._hash())
        except InvalidSignature:
            return False
        return True
