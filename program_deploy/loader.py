# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
The upgradeable program loader: account states and instruction builders.

Programs managed by the upgradeable loader are split across two accounts.
The *program* account is a fixed size pointer to a *program data* account,
which holds the upgrade authority followed by the executable bytes. New
bytes are first written into a *buffer* account and then copied into the
program data account in a single deploy or upgrade instruction.

All loader accounts start with a ``u32`` state tag:

====  ===============  ==============================================
Tag   State            Fields
====  ===============  ==============================================
0     Uninitialized
1     Buffer           ``authority: Option<address>``
2     Program          ``programdata_address: address``
3     ProgramData      ``slot: u64``, ``upgrade_authority: Option<address>``
====  ===============  ==============================================

Instruction data is bincode encoded with a ``u32`` variant tag.
"""

from __future__ import annotations

import typing
import unittest
from typing import List, Optional

from .address import (
    CLOCK_SYSVAR,
    COMPUTE_BUDGET_PROGRAM,
    LOADER_PROGRAM,
    RENT_SYSVAR,
    SYSTEM_PROGRAM,
    AccountAddress,
)
from .transactions import AccountMeta, Instruction
from .wire import Deserializer, Serializer

BUFFER_METADATA_SIZE: int = 4 + 1 + AccountAddress.LENGTH
PROGRAM_SIZE: int = 4 + AccountAddress.LENGTH
PROGRAMDATA_METADATA_SIZE: int = 4 + 8 + 1 + AccountAddress.LENGTH

# Largest single loader account, mirrored from the runtime's permitted data length
MAX_PERMITTED_DATA_LENGTH: int = 10 * 1024 * 1024


def size_of_buffer(program_len: int) -> int:
    return BUFFER_METADATA_SIZE + program_len


def size_of_programdata(program_len: int) -> int:
    return PROGRAMDATA_METADATA_SIZE + program_len


class Uninitialized:
    def __eq__(self, other: object) -> bool:
        return isinstance(other, Uninitialized)

    @staticmethod
    def deserialize(deserializer: Deserializer) -> Uninitialized:
        return Uninitialized()

    def serialize(self, serializer: Serializer):
        pass


class Buffer:
    """A staging buffer; writable only while ``authority`` is set."""

    authority: Optional[AccountAddress]

    def __init__(self, authority: Optional[AccountAddress]):
        self.authority = authority

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Buffer):
            return NotImplemented
        return self.authority == other.authority

    def __str__(self) -> str:
        return f"Buffer(authority={self.authority})"

    @staticmethod
    def deserialize(deserializer: Deserializer) -> Buffer:
        return Buffer(deserializer.option(AccountAddress.deserialize))

    def serialize(self, serializer: Serializer):
        serializer.option(self.authority, Serializer.struct)


class Program:
    programdata_address: AccountAddress

    def __init__(self, programdata_address: AccountAddress):
        self.programdata_address = programdata_address

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Program):
            return NotImplemented
        return self.programdata_address == other.programdata_address

    def __str__(self) -> str:
        return f"Program(programdata={self.programdata_address})"

    @staticmethod
    def deserialize(deserializer: Deserializer) -> Program:
        return Program(AccountAddress.deserialize(deserializer))

    def serialize(self, serializer: Serializer):
        self.programdata_address.serialize(serializer)


class ProgramData:
    """Program data metadata; the program is immutable when ``upgrade_authority`` is None."""

    slot: int
    upgrade_authority: Optional[AccountAddress]

    def __init__(self, slot: int, upgrade_authority: Optional[AccountAddress]):
        self.slot = slot
        self.upgrade_authority = upgrade_authority

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProgramData):
            return NotImplemented
        return (
            self.slot == other.slot
            and self.upgrade_authority == other.upgrade_authority
        )

    def __str__(self) -> str:
        return f"ProgramData(slot={self.slot}, authority={self.upgrade_authority})"

    @staticmethod
    def deserialize(deserializer: Deserializer) -> ProgramData:
        slot = deserializer.u64()
        upgrade_authority = deserializer.option(AccountAddress.deserialize)
        return ProgramData(slot, upgrade_authority)

    def serialize(self, serializer: Serializer):
        serializer.u64(self.slot)
        serializer.option(self.upgrade_authority, Serializer.struct)


class LoaderState:
    """The leading state of a loader owned account.

    Attributes:
        variant: The state tag
        value: The concrete state object
    """

    UNINITIALIZED: int = 0
    BUFFER: int = 1
    PROGRAM: int = 2
    PROGRAMDATA: int = 3

    variant: int
    value: typing.Any

    def __init__(self, value: typing.Any):
        if isinstance(value, Uninitialized):
            self.variant = LoaderState.UNINITIALIZED
        elif isinstance(value, Buffer):
            self.variant = LoaderState.BUFFER
        elif isinstance(value, Program):
            self.variant = LoaderState.PROGRAM
        elif isinstance(value, ProgramData):
            self.variant = LoaderState.PROGRAMDATA
        else:
            raise Exception("Invalid type")
        self.value = value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LoaderState):
            return NotImplemented
        return self.variant == other.variant and self.value == other.value

    def __str__(self) -> str:
        return self.value.__str__()

    @staticmethod
    def from_account_data(data: bytes) -> LoaderState:
        """Parse the state header of raw account data, ignoring trailing bytes."""
        return LoaderState.deserialize(Deserializer(data))

    @staticmethod
    def deserialize(deserializer: Deserializer) -> LoaderState:
        variant = deserializer.u32()

        if variant == LoaderState.UNINITIALIZED:
            value: typing.Any = Uninitialized.deserialize(deserializer)
        elif variant == LoaderState.BUFFER:
            value = Buffer.deserialize(deserializer)
        elif variant == LoaderState.PROGRAM:
            value = Program.deserialize(deserializer)
        elif variant == LoaderState.PROGRAMDATA:
            value = ProgramData.deserialize(deserializer)
        else:
            raise Exception(f"Invalid loader state: {variant}")

        return LoaderState(value)

    def serialize(self, serializer: Serializer):
        serializer.u32(self.variant)
        serializer.struct(self.value)

    def to_bytes(self) -> bytes:
        ser = Serializer()
        self.serialize(ser)
        return ser.output()


class LoaderInstruction:
    """Decoded loader instruction data: a variant tag and its arguments."""

    INITIALIZE_BUFFER: int = 0
    WRITE: int = 1
    DEPLOY_WITH_MAX_DATA_LEN: int = 2
    UPGRADE: int = 3
    SET_AUTHORITY: int = 4
    CLOSE: int = 5
    EXTEND_PROGRAM: int = 6
    SET_AUTHORITY_CHECKED: int = 7

    variant: int
    offset: int
    data: bytes
    max_data_len: int
    additional_bytes: int

    def __init__(
        self,
        variant: int,
        offset: int = 0,
        data: bytes = b"",
        max_data_len: int = 0,
        additional_bytes: int = 0,
    ):
        self.variant = variant
        self.offset = offset
        self.data = data
        self.max_data_len = max_data_len
        self.additional_bytes = additional_bytes

    @staticmethod
    def deserialize(deserializer: Deserializer) -> LoaderInstruction:
        variant = deserializer.u32()
        if variant == LoaderInstruction.WRITE:
            offset = deserializer.u32()
            return LoaderInstruction(variant, offset=offset, data=deserializer.bincode_bytes())
        if variant == LoaderInstruction.DEPLOY_WITH_MAX_DATA_LEN:
            return LoaderInstruction(variant, max_data_len=deserializer.u64())
        if variant == LoaderInstruction.EXTEND_PROGRAM:
            return LoaderInstruction(variant, additional_bytes=deserializer.u32())
        if variant > LoaderInstruction.SET_AUTHORITY_CHECKED:
            raise Exception(f"Invalid loader instruction: {variant}")
        return LoaderInstruction(variant)

    def serialize(self, serializer: Serializer):
        serializer.u32(self.variant)
        if self.variant == LoaderInstruction.WRITE:
            serializer.u32(self.offset)
            serializer.bincode_bytes(self.data)
        elif self.variant == LoaderInstruction.DEPLOY_WITH_MAX_DATA_LEN:
            serializer.u64(self.max_data_len)
        elif self.variant == LoaderInstruction.EXTEND_PROGRAM:
            serializer.u32(self.additional_bytes)

    def to_bytes(self) -> bytes:
        ser = Serializer()
        self.serialize(ser)
        return ser.output()


def create_account(
    payer: AccountAddress,
    new_account: AccountAddress,
    lamports: int,
    space: int,
    owner: AccountAddress,
) -> Instruction:
    """System program instruction funding and allocating ``new_account``."""
    ser = Serializer()
    ser.u32(0)
    ser.u64(lamports)
    ser.u64(space)
    owner.serialize(ser)
    return Instruction(
        SYSTEM_PROGRAM,
        [
            AccountMeta.writable(payer, True),
            AccountMeta.writable(new_account, True),
        ],
        ser.output(),
    )


def set_compute_unit_price(micro_lamports: int) -> Instruction:
    """Priority fee per compute unit, in micro-lamports."""
    ser = Serializer()
    ser.u8(3)
    ser.u64(micro_lamports)
    return Instruction(COMPUTE_BUDGET_PROGRAM, [], ser.output())


def create_buffer(
    payer: AccountAddress,
    buffer: AccountAddress,
    authority: AccountAddress,
    lamports: int,
    program_len: int,
) -> List[Instruction]:
    """Allocate a buffer large enough for ``program_len`` bytes and initialize it."""
    return [
        create_account(
            payer, buffer, lamports, size_of_buffer(program_len), LOADER_PROGRAM
        ),
        Instruction(
            LOADER_PROGRAM,
            [AccountMeta.writable(buffer), AccountMeta.readonly(authority)],
            LoaderInstruction(LoaderInstruction.INITIALIZE_BUFFER).to_bytes(),
        ),
    ]


def write(
    buffer: AccountAddress, authority: AccountAddress, offset: int, data: bytes
) -> Instruction:
    return Instruction(
        LOADER_PROGRAM,
        [AccountMeta.writable(buffer), AccountMeta.readonly(authority, True)],
        LoaderInstruction(LoaderInstruction.WRITE, offset=offset, data=data).to_bytes(),
    )


def deploy_with_max_program_len(
    payer: AccountAddress,
    program: AccountAddress,
    buffer: AccountAddress,
    authority: AccountAddress,
    program_lamports: int,
    max_data_len: int,
) -> List[Instruction]:
    """Create the program account and deploy the buffer into fresh program data."""
    programdata = AccountAddress.for_program_data(program)
    return [
        create_account(payer, program, program_lamports, PROGRAM_SIZE, LOADER_PROGRAM),
        Instruction(
            LOADER_PROGRAM,
            [
                AccountMeta.writable(payer, True),
                AccountMeta.writable(programdata),
                AccountMeta.writable(program),
                AccountMeta.writable(buffer),
                AccountMeta.readonly(RENT_SYSVAR),
                AccountMeta.readonly(CLOCK_SYSVAR),
                AccountMeta.readonly(SYSTEM_PROGRAM),
                AccountMeta.readonly(authority, True),
            ],
            LoaderInstruction(
                LoaderInstruction.DEPLOY_WITH_MAX_DATA_LEN, max_data_len=max_data_len
            ).to_bytes(),
        ),
    ]


def upgrade(
    program: AccountAddress,
    buffer: AccountAddress,
    authority: AccountAddress,
    spill: AccountAddress,
) -> Instruction:
    """Swap the buffer's bytes into the program; buffer lamports go to ``spill``."""
    return Instruction(
        LOADER_PROGRAM,
        [
            AccountMeta.writable(AccountAddress.for_program_data(program)),
            AccountMeta.writable(program),
            AccountMeta.writable(buffer),
            AccountMeta.writable(spill),
            AccountMeta.readonly(RENT_SYSVAR),
            AccountMeta.readonly(CLOCK_SYSVAR),
            AccountMeta.readonly(authority, True),
        ],
        LoaderInstruction(LoaderInstruction.UPGRADE).to_bytes(),
    )


def set_authority(
    account: AccountAddress,
    current_authority: AccountAddress,
    new_authority: Optional[AccountAddress],
) -> Instruction:
    """Change the authority of a buffer or program data account.

    Passing ``None`` as the new authority makes a program immutable.
    """
    accounts = [
        AccountMeta.writable(account),
        AccountMeta.readonly(current_authority, True),
    ]
    if new_authority is not None:
        accounts.append(AccountMeta.readonly(new_authority))
    return Instruction(
        LOADER_PROGRAM,
        accounts,
        LoaderInstruction(LoaderInstruction.SET_AUTHORITY).to_bytes(),
    )


def set_authority_checked(
    account: AccountAddress,
    current_authority: AccountAddress,
    new_authority: AccountAddress,
) -> Instruction:
    """Like :func:`set_authority` but the new authority must also sign."""
    return Instruction(
        LOADER_PROGRAM,
        [
            AccountMeta.writable(account),
            AccountMeta.readonly(current_authority, True),
            AccountMeta.readonly(new_authority, True),
        ],
        LoaderInstruction(LoaderInstruction.SET_AUTHORITY_CHECKED).to_bytes(),
    )


def close(
    account: AccountAddress,
    recipient: AccountAddress,
    authority: AccountAddress,
    program: Optional[AccountAddress] = None,
) -> Instruction:
    """Close a buffer or program data account and reclaim its lamports.

    ``program`` must be given when closing program data.
    """
    accounts = [
        AccountMeta.writable(account),
        AccountMeta.writable(recipient),
        AccountMeta.readonly(authority, True),
    ]
    if program is not None:
        accounts.append(AccountMeta.writable(program))
    return Instruction(
        LOADER_PROGRAM,
        accounts,
        LoaderInstruction(LoaderInstruction.CLOSE).to_bytes(),
    )


def extend_program(
    program: AccountAddress, payer: AccountAddress, additional_bytes: int
) -> Instruction:
    return Instruction(
        LOADER_PROGRAM,
        [
            AccountMeta.writable(AccountAddress.for_program_data(program)),
            AccountMeta.writable(program),
            AccountMeta.readonly(SYSTEM_PROGRAM),
            AccountMeta.writable(payer, True),
        ],
        LoaderInstruction(
            LoaderInstruction.EXTEND_PROGRAM, additional_bytes=additional_bytes
        ).to_bytes(),
    )


class Test(unittest.TestCase):
    def test_state_sizes(self):
        authority = AccountAddress(b"\x01" * 32)
        self.assertEqual(
            len(LoaderState(Buffer(authority)).to_bytes()), BUFFER_METADATA_SIZE
        )
        self.assertEqual(
            len(LoaderState(Program(authority)).to_bytes()), PROGRAM_SIZE
        )
        self.assertEqual(
            len(LoaderState(ProgramData(5, authority)).to_bytes()),
            PROGRAMDATA_METADATA_SIZE,
        )
        self.assertEqual(size_of_buffer(100), 137)
        self.assertEqual(size_of_programdata(100), 145)

    def test_state_parse_ignores_payload(self):
        state = LoaderState(ProgramData(42, None))
        data = state.to_bytes() + b"\x7fELF"
        self.assertEqual(LoaderState.from_account_data(data), state)
        self.assertIsNone(LoaderState.from_account_data(data).value.upgrade_authority)

        with self.assertRaises(Exception):
            LoaderState.from_account_data(b"\x09\x00\x00\x00")

    def test_write_instruction_data(self):
        buffer = AccountAddress(b"\x02" * 32)
        authority = AccountAddress(b"\x03" * 32)
        instruction = write(buffer, authority, 1024, b"\xaa\xbb")

        self.assertEqual(
            instruction.data,
            b"\x01\x00\x00\x00" + b"\x00\x04\x00\x00" + b"\x02" + b"\x00" * 7 + b"\xaa\xbb",
        )
        decoded = LoaderInstruction.deserialize(Deserializer(instruction.data))
        self.assertEqual(decoded.variant, LoaderInstruction.WRITE)
        self.assertEqual(decoded.offset, 1024)
        self.assertEqual(decoded.data, b"\xaa\xbb")
        self.assertTrue(instruction.accounts[1].is_signer)

    def test_deploy_instructions(self):
        payer = AccountAddress(b"\x04" * 32)
        program = AccountAddress(b"\x05" * 32)
        buffer = AccountAddress(b"\x06" * 32)
        authority = AccountAddress(b"\x07" * 32)
        create, deploy = deploy_with_max_program_len(
            payer, program, buffer, authority, 1_000, 4096
        )
        self.assertEqual(create.program_id, SYSTEM_PROGRAM)
        self.assertTrue(create.accounts[1].is_signer)
        decoded = LoaderInstruction.deserialize(Deserializer(deploy.data))
        self.assertEqual(decoded.variant, LoaderInstruction.DEPLOY_WITH_MAX_DATA_LEN)
        self.assertEqual(decoded.max_data_len, 4096)
        self.assertEqual(
            deploy.accounts[1].pubkey, AccountAddress.for_program_data(program)
        )

    def test_set_authority_to_none(self):
        account = AccountAddress(b"\x08" * 32)
        authority = AccountAddress(b"\x09" * 32)
        self.assertEqual(len(set_authority(account, authority, None).accounts), 2)
        self.assertEqual(
            len(set_authority(account, authority, SYSTEM_PROGRAM).accounts), 3
        )

    def test_compute_unit_price(self):
        instruction = set_compute_unit_price(1_000)
        self.assertEqual(instruction.program_id, COMPUTE_BUDGET_PROGRAM)
        self.assertEqual(instruction.data, b"\x03" + (1000).to_bytes(8, "little"))
