# Copyright 2023 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Key tools used to create and restore ACME account and domain keys."""
import hashlib

import josepy as jose
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)


# Constants and Variables
RSA_BIT_LENGTH = 2048
RSA_EXPONENT = 65537


class KeyPair:
    """An RSA keypair in the encodings the rest of the package needs."""
    # pylint: disable=too-few-public-methods

    def __init__(
            self,
            private_key_pem: bytes,
            private_key_jwk: dict,
            public_key_pem: bytes,
            public_key_fingerprint: str
    ):
        self.private_key_pem = private_key_pem
        self.private_key_jwk = private_key_jwk
        self.public_key_pem = public_key_pem
        self.public_key_fingerprint = public_key_fingerprint


class KeyProvider:
    """
    Generates RSA keypairs and restores account keys from their JWK form.
    """

    def generate_keypair(self, bit_length: int = RSA_BIT_LENGTH, exponent: int = RSA_EXPONENT) -> KeyPair:
        """
        Generates a new RSA keypair.

        Args:
            bit_length (int): The RSA modulus size in bits.
            exponent (int): The RSA public exponent.

        Returns:
            simple_acme_renewal.tools.KeyPair: The new keypair. The `public_key_fingerprint` attribute is the value
                used as the account ID when this keypair becomes an account key.

        Examples:
            >>> KeyProvider().generate_keypair(2048).public_key_fingerprint
            'a3cd6c1b4b35a4e1e2ba3e27ffd5b1c8'
        """
        key = rsa.generate_private_key(public_exponent=exponent, key_size=bit_length, backend=default_backend())
        public_key_pem = self.public_bytes(key)

        return KeyPair(
            private_key_pem=self.private_bytes(key),
            private_key_jwk=jose.JWKRSA(key=key).to_json(),
            public_key_pem=public_key_pem,
            public_key_fingerprint=self.fingerprint(public_key_pem)
        )

    def parse_account_private_key(self, jwk: dict) -> tuple:
        """
        Restores the PEM encodings of an account key stored in JWK form.

        Args:
            jwk (dict): The JWK fields (`kty`, `n`, `e`, `d`, `p`, `q`, `dp`, `dq`, `qi`) of the private key.

        Returns:
            tuple: A tuple with the first value containing the private key PEM, the second value contains the public
                key PEM.

        Raises:
            josepy.errors.DeserializationError: When `jwk` is not a valid RSA private key.
        """
        # from_json dispatches on `kty`, so a JWK of another type comes back as another class
        account_key = jose.JWKRSA.from_json(jwk)
        if not isinstance(account_key, jose.JWKRSA) or not isinstance(
                account_key.key._wrapped, rsa.RSAPrivateKey):  # pylint: disable=protected-access
            raise jose.errors.DeserializationError("JWK does not contain an RSA private key.")

        return self.private_bytes(account_key.key), self.public_bytes(account_key.key)

    @staticmethod
    def private_bytes(key) -> bytes:
        """Encodes a private key as a traditional OpenSSL PEM."""
        return key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=NoEncryption()
        )

    @staticmethod
    def public_bytes(key) -> bytes:
        """Encodes the public half of a private key as a SubjectPublicKeyInfo PEM."""
        return key.public_key().public_bytes(encoding=Encoding.PEM, format=PublicFormat.SubjectPublicKeyInfo)

    @staticmethod
    def fingerprint(public_key_pem: bytes) -> str:
        """Returns the MD5 hex digest of a public key PEM."""
        return hashlib.md5(public_key_pem, usedforsecurity=False).hexdigest()
