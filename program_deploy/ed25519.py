# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Ed25519 keys and signatures.

Every transaction signer on the ledger (fee payer, program keypair, upgrade
authority, staging buffer keypair) is an Ed25519 key. Signatures are carried
on the wire as raw 64-byte values and public keys as raw 32-byte values.

Examples:
    Signing and verifying::

        private_key = PrivateKey.random()
        signature = private_key.sign(b"message")
        assert private_key.public_key().verify(b"message", signature)
"""

from __future__ import annotations

import unittest

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .wire import Deserializer, Serializer


class PrivateKey:
    """Ed25519 private key.

    Attributes:
        LENGTH: The byte length of Ed25519 private keys (32)
        key: The underlying NaCl SigningKey instance
    """

    LENGTH: int = 32

    key: SigningKey

    def __init__(self, key: SigningKey):
        self.key = key

    def __eq__(self, other: object):
        if not isinstance(other, PrivateKey):
            return NotImplemented
        return self.key == other.key

    def __str__(self):
        return self.hex()

    @staticmethod
    def from_hex(value: str | bytes) -> PrivateKey:
        """Parse a private key from a hex string (with or without ``0x``) or raw bytes.

        Raises:
            Exception: If the key data has an incorrect length.
        """
        if isinstance(value, str):
            if value[0:2] == "0x":
                value = value[2:]
            value = bytes.fromhex(value)
        if len(value) != PrivateKey.LENGTH:
            raise Exception("Length mismatch")
        return PrivateKey(SigningKey(value))

    @staticmethod
    def from_str(value: str) -> PrivateKey:
        return PrivateKey.from_hex(value)

    def hex(self) -> str:
        return f"0x{self.key.encode().hex()}"

    def public_key(self) -> PublicKey:
        return PublicKey(self.key.verify_key)

    @staticmethod
    def random() -> PrivateKey:
        return PrivateKey(SigningKey.generate())

    def sign(self, data: bytes) -> Signature:
        return Signature(self.key.sign(data).signature)

    def to_crypto_bytes(self) -> bytes:
        """The 32-byte seed of the key."""
        return self.key.encode()


class PublicKey:
    """Ed25519 public key.

    Attributes:
        LENGTH: The byte length of Ed25519 public keys (32)
        key: The underlying NaCl VerifyKey instance
    """

    LENGTH: int = 32

    key: VerifyKey

    def __init__(self, key: VerifyKey):
        self.key = key

    def __eq__(self, other: object):
        if not isinstance(other, PublicKey):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key.encode())

    def __str__(self) -> str:
        return f"0x{self.key.encode().hex()}"

    def verify(self, data: bytes, signature: Signature) -> bool:
        """Verify ``signature`` over ``data``; False on any mismatch."""
        try:
            self.key.verify(data, signature.data())
        except (BadSignatureError, ValueError):
            return False
        return True

    def to_crypto_bytes(self) -> bytes:
        return self.key.encode()

    @staticmethod
    def deserialize(deserializer: Deserializer) -> PublicKey:
        return PublicKey(VerifyKey(deserializer.fixed_bytes(PublicKey.LENGTH)))

    def serialize(self, serializer: Serializer):
        serializer.fixed_bytes(self.key.encode())


class Signature:
    """A 64-byte Ed25519 signature.

    The all-zero signature is used as a placeholder when sizing unsigned
    transactions.
    """

    LENGTH: int = 64

    signature: bytes

    def __init__(self, signature: bytes):
        if len(signature) != Signature.LENGTH:
            raise Exception("Length mismatch")
        self.signature = signature

    def __eq__(self, other: object):
        if not isinstance(other, Signature):
            return NotImplemented
        return self.signature == other.signature

    def __hash__(self) -> int:
        return hash(self.signature)

    def __str__(self) -> str:
        return f"0x{self.signature.hex()}"

    def __repr__(self) -> str:
        return self.__str__()

    def data(self) -> bytes:
        return self.signature

    @staticmethod
    def placeholder() -> Signature:
        return Signature(bytes(Signature.LENGTH))

    @staticmethod
    def from_str(value: str) -> Signature:
        if value[0:2] == "0x":
            value = value[2:]
        return Signature(bytes.fromhex(value))

    @staticmethod
    def deserialize(deserializer: Deserializer) -> Signature:
        return Signature(deserializer.fixed_bytes(Signature.LENGTH))

    def serialize(self, serializer: Serializer):
        serializer.fixed_bytes(self.signature)


class Test(unittest.TestCase):
    def test_private_key_from_str(self):
        with_prefix = PrivateKey.from_str(
            "0x4e5e3be60f4bbd5e98d086d932f3ce779ff4b58da99bf9e5241ae1212a29e5fe"
        )
        without_prefix = PrivateKey.from_hex(
            bytes.fromhex(
                "4e5e3be60f4bbd5e98d086d932f3ce779ff4b58da99bf9e5241ae1212a29e5fe"
            )
        )
        self.assertEqual(with_prefix, without_prefix)
        self.assertEqual(
            with_prefix.hex(),
            "0x4e5e3be60f4bbd5e98d086d932f3ce779ff4b58da99bf9e5241ae1212a29e5fe",
        )
        with self.assertRaises(Exception):
            PrivateKey.from_str("0x4e5e")

    def test_sign_and_verify(self):
        in_value = b"test_message"

        private_key = PrivateKey.random()
        public_key = private_key.public_key()

        signature = private_key.sign(in_value)
        self.assertTrue(public_key.verify(in_value, signature))
        self.assertFalse(public_key.verify(b"other_message", signature))
        self.assertFalse(public_key.verify(in_value, Signature.placeholder()))

    def test_signature_serialization(self):
        signature = PrivateKey.random().sign(b"payload")
        ser = Serializer()
        signature.serialize(ser)
        self.assertEqual(len(ser.output()), Signature.LENGTH)
        self.assertEqual(Signature.deserialize(Deserializer(ser.output())), signature)
        self.assertEqual(Signature.from_str(str(signature)), signature)

    def test_public_key_serialization(self):
        public_key = PrivateKey.random().public_key()
        ser = Serializer()
        public_key.serialize(ser)
        self.assertEqual(ser.output(), public_key.to_crypto_bytes())
        self.assertEqual(PublicKey.deserialize(Deserializer(ser.output())), public_key)
