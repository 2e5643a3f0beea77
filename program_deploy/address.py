# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Account addresses on the ledger.

Every account, program and staging buffer is identified by a 32-byte address.
Addresses created from Ed25519 keys are the raw public key bytes; addresses of
program data accounts are derived from the program address.

String forms follow two rules:

- **Special addresses** (``0x0`` through ``0xf``) are reserved for built-in
  programs and sysvars and print in SHORT form, e.g. ``0x2``.
- All other addresses print in LONG form: ``0x`` followed by 64 hex digits.

Examples:
    Parsing and printing::

        from program_deploy.address import AccountAddress, LOADER_PROGRAM

        program_id = AccountAddress.from_str(
            "0xca843279e3427144cead5e4d5999a3d0ca843279e3427144cead5e4d5999a3d0"
        )
        print(LOADER_PROGRAM)  # "0x2"

    Locating a program's data account::

        programdata = AccountAddress.for_program_data(program_id)
"""

from __future__ import annotations

import hashlib
import unittest

from . import ed25519
from .wire import Deserializer, Serializer

# Domain separator for program data address derivation
PROGRAM_DATA_DOMAIN_SEPARATOR = b"upgradeable_loader::program_data"


class ParseAddressError(Exception):
    """An address string or byte sequence could not be parsed."""


class AccountAddress:
    """A 32-byte ledger address.

    Attributes:
        address: The raw 32-byte address data
        LENGTH: The required byte length of all addresses (32)
    """

    address: bytes
    LENGTH: int = 32

    def __init__(self, address: bytes):
        self.address = address

        if len(address) != AccountAddress.LENGTH:
            raise ParseAddressError("Expected address of length 32")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AccountAddress):
            return NotImplemented
        return self.address == other.address

    def __hash__(self) -> int:
        return hash(self.address)

    def __str__(self):
        suffix = self.address.hex()
        if self.is_special():
            suffix = suffix.lstrip("0") or "0"
        return f"0x{suffix}"

    def __repr__(self):
        return self.__str__()

    def is_special(self):
        """True for the reserved addresses ``0x0`` through ``0xf``."""
        return all(b == 0 for b in self.address[:-1]) and self.address[-1] < 0x10

    @staticmethod
    def from_str(address: str) -> AccountAddress:
        """Strictly parse an address.

        Special addresses may be written in SHORT form; every other address
        must be written in LONG form with the ``0x`` prefix.

        Raises:
            ParseAddressError: If the string is not a valid strict address.
        """
        if not address.startswith("0x"):
            raise ParseAddressError("Hex string must start with a leading 0x.")

        out = AccountAddress.from_str_relaxed(address)

        if len(address) != 66:
            if not out.is_special():
                raise ParseAddressError(
                    "The given hex string is not a special address, it must be "
                    "represented as 0x + 64 chars."
                )
            if len(address) != 3:
                raise ParseAddressError(
                    "The given hex string is a special address not in LONG form, "
                    "it must be 0x0 to 0xf without padding zeroes."
                )

        return out

    @staticmethod
    def from_str_relaxed(address: str) -> AccountAddress:
        """Parse an address with or without ``0x`` and with any amount of padding."""
        addr = address[2:] if address.startswith("0x") else address

        if len(addr) < 1:
            raise ParseAddressError(
                "Hex string is too short, must be 1 to 64 chars long, excluding the leading 0x."
            )
        if len(addr) > 64:
            raise ParseAddressError(
                "Hex string is too long, must be 1 to 64 chars long, excluding the leading 0x."
            )

        try:
            return AccountAddress(bytes.fromhex(addr.rjust(64, "0")))
        except ValueError as e:
            raise ParseAddressError(f"Invalid hex string: {address}") from e

    @staticmethod
    def from_key(key: ed25519.PublicKey) -> AccountAddress:
        """The address owned by an Ed25519 key is the key itself."""
        return AccountAddress(key.to_crypto_bytes())

    @staticmethod
    def for_program_data(program_id: AccountAddress) -> AccountAddress:
        """Derive the program data address for an upgradeable program.

        The program account only stores a pointer to this account; the
        executable bytes and the upgrade authority live here.
        """
        hasher = hashlib.sha3_256()
        hasher.update(program_id.address)
        hasher.update(LOADER_PROGRAM.address)
        hasher.update(PROGRAM_DATA_DOMAIN_SEPARATOR)
        return AccountAddress(hasher.digest())

    @staticmethod
    def deserialize(deserializer: Deserializer) -> AccountAddress:
        return AccountAddress(deserializer.fixed_bytes(AccountAddress.LENGTH))

    def serialize(self, serializer: Serializer):
        serializer.fixed_bytes(self.address)


def _special(value: int) -> AccountAddress:
    return AccountAddress(bytes(31) + bytes([value]))


SYSTEM_PROGRAM: AccountAddress = _special(0x0)
LOADER_PROGRAM: AccountAddress = _special(0x2)
COMPUTE_BUDGET_PROGRAM: AccountAddress = _special(0x3)
RENT_SYSVAR: AccountAddress = _special(0x5)
CLOCK_SYSVAR: AccountAddress = _special(0x6)


class Test(unittest.TestCase):
    LONG = "0xca843279e3427144cead5e4d5999a3d0ca843279e3427144cead5e4d5999a3d0"

    def test_special_formatting(self):
        self.assertEqual(str(SYSTEM_PROGRAM), "0x0")
        self.assertEqual(str(LOADER_PROGRAM), "0x2")
        self.assertEqual(AccountAddress.from_str("0xf"), _special(0xF))
        self.assertEqual(
            str(AccountAddress.from_str_relaxed("10")),
            "0x0000000000000000000000000000000000000000000000000000000000000010",
        )

    def test_from_str(self):
        self.assertEqual(str(AccountAddress.from_str(self.LONG)), self.LONG)
        with self.assertRaises(ParseAddressError):
            AccountAddress.from_str(self.LONG[2:])
        with self.assertRaises(ParseAddressError):
            AccountAddress.from_str("0x0f")
        with self.assertRaises(ParseAddressError):
            AccountAddress.from_str("0x10")
        with self.assertRaises(ParseAddressError):
            AccountAddress.from_str_relaxed("0xzz")
        with self.assertRaises(ParseAddressError):
            AccountAddress.from_str_relaxed("0x" + "1" * 65)

    def test_program_data_derivation(self):
        program_id = AccountAddress.from_str(self.LONG)
        programdata = AccountAddress.for_program_data(program_id)
        self.assertNotEqual(programdata, program_id)
        self.assertEqual(programdata, AccountAddress.for_program_data(program_id))
        self.assertNotEqual(
            programdata, AccountAddress.for_program_data(SYSTEM_PROGRAM)
        )

    def test_from_key(self):
        key = ed25519.PrivateKey.random().public_key()
        self.assertEqual(AccountAddress.from_key(key).address, key.to_crypto_bytes())

    def test_serialization(self):
        program_id = AccountAddress.from_str(self.LONG)
        ser = Serializer()
        program_id.serialize(ser)
        self.assertEqual(
            AccountAddress.deserialize(Deserializer(ser.output())), program_id
        )
