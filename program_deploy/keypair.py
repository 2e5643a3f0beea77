# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Signing keypairs and key files.

A :class:`Keypair` couples an Ed25519 private key with the address it
controls. Fee payers, upgrade authorities, program keypairs and staging
buffer keypairs are all plain keypairs.

Key files are JSON. Two layouts are understood:

- a list of 64 integers, the 32-byte secret seed followed by the 32-byte
  public key (the layout written by :meth:`Keypair.store`), or
- an object with ``private_key`` (hex) and optionally ``address`` fields.

Examples:
    Generating and persisting a program keypair::

        program_keypair = Keypair.generate()
        program_keypair.store("./target/deploy/program-keypair.json")

        restored = Keypair.load("./target/deploy/program-keypair.json")
        assert restored.address() == program_keypair.address()
"""

from __future__ import annotations

import json
import tempfile
import unittest

from . import ed25519
from .address import AccountAddress


class Keypair:
    """An Ed25519 private key and the address it signs for."""

    account_address: AccountAddress
    private_key: ed25519.PrivateKey

    def __init__(
        self, account_address: AccountAddress, private_key: ed25519.PrivateKey
    ):
        self.account_address = account_address
        self.private_key = private_key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Keypair):
            return NotImplemented
        return (
            self.account_address == other.account_address
            and self.private_key == other.private_key
        )

    def __repr__(self) -> str:
        return f"Keypair({self.account_address})"

    @staticmethod
    def generate() -> Keypair:
        private_key = ed25519.PrivateKey.random()
        account_address = AccountAddress.from_key(private_key.public_key())
        return Keypair(account_address, private_key)

    @staticmethod
    def load_key(key: str) -> Keypair:
        """Build a keypair from a hex encoded 32-byte secret seed."""
        private_key = ed25519.PrivateKey.from_str(key)
        account_address = AccountAddress.from_key(private_key.public_key())
        return Keypair(account_address, private_key)

    @staticmethod
    def load(path: str) -> Keypair:
        """Load a keypair from a JSON key file.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the file contents are not a recognised key layout or
                the stored public key does not match the secret.
        """
        with open(path) as file:
            data = json.load(file)

        if isinstance(data, list):
            raw = bytes(data)
            if len(raw) != 64:
                raise ValueError(f"Expected 64 key bytes in {path}, found {len(raw)}")
            keypair = Keypair.from_bytes(raw)
        elif isinstance(data, dict) and "private_key" in data:
            keypair = Keypair.load_key(data["private_key"])
            if "address" in data and keypair.address() != AccountAddress.from_str_relaxed(
                data["address"]
            ):
                raise ValueError(f"Address in {path} does not match its private key")
        else:
            raise ValueError(f"Unrecognised key file layout in {path}")
        return keypair

    @staticmethod
    def from_bytes(raw: bytes) -> Keypair:
        """Build a keypair from the 64-byte ``seed || public key`` form."""
        keypair = Keypair.load_key(raw[:32].hex())
        if keypair.address().address != raw[32:]:
            raise ValueError("Public key does not match the secret seed")
        return keypair

    def to_bytes(self) -> bytes:
        return self.private_key.to_crypto_bytes() + self.account_address.address

    def store(self, path: str):
        with open(path, "w") as file:
            json.dump(list(self.to_bytes()), file)

    def address(self) -> AccountAddress:
        return self.account_address

    def public_key(self) -> ed25519.PublicKey:
        return self.private_key.public_key()

    def sign(self, data: bytes) -> ed25519.Signature:
        return self.private_key.sign(data)


class Test(unittest.TestCase):
    def test_load_and_store(self):
        (file, path) = tempfile.mkstemp()
        start = Keypair.generate()
        start.store(path)
        load = Keypair.load(path)

        self.assertEqual(start, load)
        self.assertEqual(load.address().address, load.public_key().to_crypto_bytes())

    def test_load_object_layout(self):
        start = Keypair.generate()
        (file, path) = tempfile.mkstemp()
        with open(path, "w") as f:
            json.dump(
                {"address": str(start.address()), "private_key": start.private_key.hex()},
                f,
            )
        self.assertEqual(Keypair.load(path), start)

        with open(path, "w") as f:
            json.dump(
                {
                    "address": str(Keypair.generate().address()),
                    "private_key": start.private_key.hex(),
                },
                f,
            )
        with self.assertRaises(ValueError):
            Keypair.load(path)

    def test_bad_layout(self):
        (file, path) = tempfile.mkstemp()
        with open(path, "w") as f:
            json.dump([1, 2, 3], f)
        with self.assertRaises(ValueError):
            Keypair.load(path)

    def test_key(self):
        message = b"test message"
        keypair = Keypair.load_key(
            "005120c5882b0d492b3d2dc60a8a4510ec2051825413878453137305ba2d644b"
        )
        signature = keypair.sign(message)
        self.assertTrue(keypair.public_key().verify(message, signature))
