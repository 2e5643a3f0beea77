# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Ledger transactions: instructions, compiled messages and signed transactions.

A transaction is a list of signatures followed by a *message*. The message
holds a three byte header, the deduplicated list of account keys touched by
the transaction, the recent blockhash that bounds its validity window, and
the compiled instructions, which reference accounts by index into the key
list.

Account keys are ordered by privilege so that the header can describe them
with three counters:

1. writable signers (the fee payer is always first)
2. read-only signers
3. writable non-signers
4. read-only non-signers

The first ``num_required_signatures`` keys must each sign the serialized
message, in key order.

Serialized transactions must fit in a single network packet of
:data:`PACKET_DATA_SIZE` bytes.

Examples:
    Building and signing a transaction::

        from program_deploy import loader
        from program_deploy.transactions import Message, Transaction

        instructions = loader.write(buffer, authority.address(), 0, chunk)
        message = Message.compile([instructions], payer.address(), blockhash)
        txn = Transaction.new(message, [payer, authority])

        wire_bytes = txn.to_bytes()
        assert len(wire_bytes) <= PACKET_DATA_SIZE
"""

from __future__ import annotations

import typing
import unittest
from typing import Dict, List

from nacl.signing import VerifyKey

from .address import AccountAddress
from .ed25519 import PublicKey, Signature
from .keypair import Keypair
from .wire import Deserializer, Serializer

# IPv6 minimum MTU minus the IP and UDP headers
PACKET_DATA_SIZE: int = 1280 - 40 - 8

BLOCKHASH_LENGTH: int = 32


class AccountMeta:
    """An account referenced by an instruction and the privileges it needs."""

    pubkey: AccountAddress
    is_signer: bool
    is_writable: bool

    def __init__(self, pubkey: AccountAddress, is_signer: bool, is_writable: bool):
        self.pubkey = pubkey
        self.is_signer = is_signer
        self.is_writable = is_writable

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AccountMeta):
            return NotImplemented
        return (
            self.pubkey == other.pubkey
            and self.is_signer == other.is_signer
            and self.is_writable == other.is_writable
        )

    def __repr__(self) -> str:
        flags = ("s" if self.is_signer else "") + ("w" if self.is_writable else "")
        return f"AccountMeta({self.pubkey}, {flags or 'r'})"

    @staticmethod
    def writable(pubkey: AccountAddress, is_signer: bool = False) -> AccountMeta:
        return AccountMeta(pubkey, is_signer, True)

    @staticmethod
    def readonly(pubkey: AccountAddress, is_signer: bool = False) -> AccountMeta:
        return AccountMeta(pubkey, is_signer, False)


class Instruction:
    """A call into an on-ledger program."""

    program_id: AccountAddress
    accounts: List[AccountMeta]
    data: bytes

    def __init__(
        self, program_id: AccountAddress, accounts: List[AccountMeta], data: bytes
    ):
        self.program_id = program_id
        self.accounts = accounts
        self.data = data

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Instruction):
            return NotImplemented
        return (
            self.program_id == other.program_id
            and self.accounts == other.accounts
            and self.data == other.data
        )

    def __repr__(self) -> str:
        return f"Instruction({self.program_id}, {self.accounts}, {len(self.data)} bytes)"


class CompiledInstruction:
    """An instruction whose program and accounts are indexes into a message's keys."""

    program_id_index: int
    accounts: List[int]
    data: bytes

    def __init__(self, program_id_index: int, accounts: List[int], data: bytes):
        self.program_id_index = program_id_index
        self.accounts = accounts
        self.data = data

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CompiledInstruction):
            return NotImplemented
        return (
            self.program_id_index == other.program_id_index
            and self.accounts == other.accounts
            and self.data == other.data
        )

    @staticmethod
    def deserialize(deserializer: Deserializer) -> CompiledInstruction:
        program_id_index = deserializer.u8()
        accounts = deserializer.sequence(Deserializer.u8)
        data = deserializer.to_bytes()
        return CompiledInstruction(program_id_index, accounts, data)

    def serialize(self, serializer: Serializer):
        serializer.u8(self.program_id_index)
        serializer.sequence(self.accounts, Serializer.u8)
        serializer.to_bytes(self.data)


class Message:
    """The signed portion of a transaction."""

    num_required_signatures: int
    num_readonly_signed: int
    num_readonly_unsigned: int
    account_keys: List[AccountAddress]
    recent_blockhash: bytes
    instructions: List[CompiledInstruction]

    def __init__(
        self,
        num_required_signatures: int,
        num_readonly_signed: int,
        num_readonly_unsigned: int,
        account_keys: List[AccountAddress],
        recent_blockhash: bytes,
        instructions: List[CompiledInstruction],
    ):
        self.num_required_signatures = num_required_signatures
        self.num_readonly_signed = num_readonly_signed
        self.num_readonly_unsigned = num_readonly_unsigned
        self.account_keys = account_keys
        self.recent_blockhash = recent_blockhash
        self.instructions = instructions

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Message):
            return NotImplemented
        return self.to_bytes() == other.to_bytes()

    @staticmethod
    def compile(
        instructions: List[Instruction],
        payer: AccountAddress,
        recent_blockhash: bytes = bytes(BLOCKHASH_LENGTH),
    ) -> Message:
        """Compile instructions into a message paid for by ``payer``.

        Accounts are deduplicated with their privileges merged, then ordered
        by privilege class while keeping first-use order within a class.
        """
        if len(recent_blockhash) != BLOCKHASH_LENGTH:
            raise ValueError("Blockhash must be 32 bytes")

        metas: Dict[AccountAddress, AccountMeta] = {
            payer: AccountMeta.writable(payer, True)
        }

        def merge(meta: AccountMeta):
            current = metas.get(meta.pubkey)
            if current is None:
                metas[meta.pubkey] = AccountMeta(
                    meta.pubkey, meta.is_signer, meta.is_writable
                )
            else:
                current.is_signer |= meta.is_signer
                current.is_writable |= meta.is_writable

        for instruction in instructions:
            for meta in instruction.accounts:
                merge(meta)
        for instruction in instructions:
            merge(AccountMeta.readonly(instruction.program_id))

        ordered = list(metas.values())
        writable_signers = [m for m in ordered if m.is_signer and m.is_writable]
        readonly_signers = [m for m in ordered if m.is_signer and not m.is_writable]
        writable_unsigned = [m for m in ordered if not m.is_signer and m.is_writable]
        readonly_unsigned = [
            m for m in ordered if not m.is_signer and not m.is_writable
        ]

        account_keys = [
            m.pubkey
            for m in writable_signers
            + readonly_signers
            + writable_unsigned
            + readonly_unsigned
        ]
        index = {key: idx for idx, key in enumerate(account_keys)}

        compiled = [
            CompiledInstruction(
                index[instruction.program_id],
                [index[meta.pubkey] for meta in instruction.accounts],
                instruction.data,
            )
            for instruction in instructions
        ]

        return Message(
            len(writable_signers) + len(readonly_signers),
            len(readonly_signers),
            len(readonly_unsigned),
            account_keys,
            recent_blockhash,
            compiled,
        )

    def signers(self) -> List[AccountAddress]:
        return self.account_keys[: self.num_required_signatures]

    def fee_payer(self) -> AccountAddress:
        return self.account_keys[0]

    def is_signer(self, index: int) -> bool:
        return index < self.num_required_signatures

    def is_writable(self, index: int) -> bool:
        if index < self.num_required_signatures:
            return index < self.num_required_signatures - self.num_readonly_signed
        return index < len(self.account_keys) - self.num_readonly_unsigned

    def decompile(self) -> List[Instruction]:
        """Expand compiled instructions back into addressable instructions."""
        return [
            Instruction(
                self.account_keys[compiled.program_id_index],
                [
                    AccountMeta(
                        self.account_keys[idx], self.is_signer(idx), self.is_writable(idx)
                    )
                    for idx in compiled.accounts
                ],
                compiled.data,
            )
            for compiled in self.instructions
        ]

    def with_blockhash(self, recent_blockhash: bytes) -> Message:
        return Message(
            self.num_required_signatures,
            self.num_readonly_signed,
            self.num_readonly_unsigned,
            self.account_keys,
            recent_blockhash,
            self.instructions,
        )

    def to_bytes(self) -> bytes:
        ser = Serializer()
        self.serialize(ser)
        return ser.output()

    @staticmethod
    def deserialize(deserializer: Deserializer) -> Message:
        num_required_signatures = deserializer.u8()
        num_readonly_signed = deserializer.u8()
        num_readonly_unsigned = deserializer.u8()
        account_keys = deserializer.sequence(AccountAddress.deserialize)
        recent_blockhash = deserializer.fixed_bytes(BLOCKHASH_LENGTH)
        instructions = deserializer.sequence(CompiledInstruction.deserialize)
        return Message(
            num_required_signatures,
            num_readonly_signed,
            num_readonly_unsigned,
            account_keys,
            recent_blockhash,
            instructions,
        )

    def serialize(self, serializer: Serializer):
        serializer.u8(self.num_required_signatures)
        serializer.u8(self.num_readonly_signed)
        serializer.u8(self.num_readonly_unsigned)
        serializer.sequence(self.account_keys, Serializer.struct)
        serializer.fixed_bytes(self.recent_blockhash)
        serializer.sequence(self.instructions, Serializer.struct)


class Transaction:
    """A message and one signature per required signer."""

    signatures: List[Signature]
    message: Message

    def __init__(self, signatures: List[Signature], message: Message):
        self.signatures = signatures
        self.message = message

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Transaction):
            return NotImplemented
        return self.signatures == other.signatures and self.message == other.message

    def __str__(self) -> str:
        return f"Transaction({self.signature()})"

    @staticmethod
    def new(message: Message, signers: typing.Sequence[Keypair]) -> Transaction:
        """Sign ``message`` with every required signer.

        Signers not required by the message are ignored.

        Raises:
            ValueError: If a required signer is missing from ``signers``.
        """
        by_address = {signer.address(): signer for signer in signers}
        payload = message.to_bytes()

        signatures = []
        for address in message.signers():
            signer = by_address.get(address)
            if signer is None:
                raise ValueError(f"Missing signer for {address}")
            signatures.append(signer.sign(payload))
        return Transaction(signatures, message)

    @staticmethod
    def unsigned(message: Message) -> Transaction:
        """A transaction carrying placeholder signatures, used for sizing."""
        return Transaction(
            [Signature.placeholder()] * message.num_required_signatures, message
        )

    def signature(self) -> Signature:
        """The fee payer's signature, which identifies the transaction."""
        return self.signatures[0]

    def verify(self) -> bool:
        if len(self.signatures) != self.message.num_required_signatures:
            return False
        payload = self.message.to_bytes()
        for address, signature in zip(self.message.signers(), self.signatures):
            if not _public_key(address).verify(payload, signature):
                return False
        return True

    def to_bytes(self) -> bytes:
        ser = Serializer()
        self.serialize(ser)
        return ser.output()

    @staticmethod
    def deserialize(deserializer: Deserializer) -> Transaction:
        signatures = deserializer.sequence(Signature.deserialize)
        message = Message.deserialize(deserializer)
        return Transaction(signatures, message)

    def serialize(self, serializer: Serializer):
        serializer.sequence(self.signatures, Serializer.struct)
        self.message.serialize(serializer)


def serialized_size(message: Message) -> int:
    """Wire size of ``message`` once signed by all of its required signers."""
    return len(Transaction.unsigned(message).to_bytes())


def _public_key(address: AccountAddress) -> PublicKey:
    return PublicKey(VerifyKey(address.address))


class Test(unittest.TestCase):
    def setUp(self):
        self.payer = Keypair.generate()
        self.authority = Keypair.generate()
        self.target = AccountAddress(b"\x07" * 32)
        self.program = AccountAddress(b"\x09" * 32)

    def instruction(self) -> Instruction:
        return Instruction(
            self.program,
            [
                AccountMeta.writable(self.target),
                AccountMeta.readonly(self.authority.address(), True),
                AccountMeta.readonly(self.payer.address()),
            ],
            b"\x01\x02\x03",
        )

    def test_compile_orders_accounts(self):
        message = Message.compile([self.instruction()], self.payer.address())
        self.assertEqual(
            message.account_keys,
            [self.payer.address(), self.authority.address(), self.target, self.program],
        )
        self.assertEqual(message.num_required_signatures, 2)
        self.assertEqual(message.num_readonly_signed, 1)
        self.assertEqual(message.num_readonly_unsigned, 1)
        self.assertTrue(message.is_writable(0))
        self.assertFalse(message.is_writable(1))
        self.assertTrue(message.is_writable(2))
        self.assertFalse(message.is_writable(3))
        self.assertEqual(message.instructions[0].program_id_index, 3)
        self.assertEqual(message.instructions[0].accounts, [2, 1, 0])

    def test_decompile(self):
        message = Message.compile([self.instruction()], self.payer.address())
        decompiled = message.decompile()[0]
        self.assertEqual(decompiled.program_id, self.program)
        self.assertEqual(decompiled.data, b"\x01\x02\x03")
        self.assertEqual(decompiled.accounts[0], AccountMeta.writable(self.target))
        # The payer's privileges are merged with its fee paying role
        self.assertEqual(
            decompiled.accounts[2], AccountMeta.writable(self.payer.address(), True)
        )

    def test_sign_and_verify(self):
        message = Message.compile(
            [self.instruction()], self.payer.address(), b"\x05" * 32
        )
        txn = Transaction.new(message, [self.authority, self.payer, Keypair.generate()])
        self.assertTrue(txn.verify())
        self.assertEqual(
            Transaction.deserialize(Deserializer(txn.to_bytes())), txn
        )

        txn.signatures.reverse()
        self.assertFalse(txn.verify())

        with self.assertRaises(ValueError):
            Transaction.new(message, [self.payer])

    def test_serialized_size(self):
        message = Message.compile([self.instruction()], self.payer.address())
        # signatures + header + keys + blockhash + instructions
        expected = (1 + 2 * 64) + 3 + (1 + 4 * 32) + 32 + (1 + 1 + 1 + 3 + 1 + 3)
        self.assertEqual(serialized_size(message), expected)
        self.assertEqual(
            serialized_size(message),
            len(Transaction.new(message, [self.payer, self.authority]).to_bytes()),
        )
