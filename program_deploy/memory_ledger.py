# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
An in-process ledger for exercising the deployment pipeline.

:class:`InMemoryLedger` implements :class:`~program_deploy.async_client.LedgerClient`
and executes the system, compute budget and upgradeable loader instructions
the pipeline sends: account creation, buffer initialization, writes, deploys,
upgrades, authority changes, closes and program extension. Signatures and
validity windows are checked on submission the way a node's preflight would.

It also records what it saw so tests can make assertions about it:

- ``sent``: every accepted transaction, in submission order.
- ``log``: ``(event, signature)`` pairs for ``send``, ``land``, ``fail``,
  ``drop`` and ``reject`` events.
- ``calls``: a count of every client method invoked.

Faults can be injected for transactions matching a predicate:

- :attr:`Fault.DROP` accepts the transaction but it never lands, and the
  validity window it was signed against expires.
- :attr:`Fault.REJECT` refuses the transaction at submission.

Setting ``latency`` delays execution of each accepted transaction until its
status has been polled that many times.

Examples:
    Dropping the write at offset 0 once::

        ledger = InMemoryLedger()
        ledger.airdrop(payer.address(), 10 * LAMPORTS_PER_SOL)
        ledger.inject(Fault.DROP, write_at(0))
"""

from __future__ import annotations

import hashlib
import typing
import unittest
from collections import Counter
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from . import loader
from .address import (
    COMPUTE_BUDGET_PROGRAM,
    LOADER_PROGRAM,
    SYSTEM_PROGRAM,
    AccountAddress,
)
from .async_client import (
    AccountInfo,
    AccountNotFound,
    ApiError,
    BlockhashInfo,
    ClientConfig,
    LedgerClient,
    SignatureStatus,
)
from .keypair import Keypair
from .transactions import Instruction, Message, Transaction
from .wire import Deserializer

LAMPORTS_PER_SOL: int = 1_000_000_000
LAMPORTS_PER_BYTE_YEAR: int = 3480
EXEMPTION_THRESHOLD_YEARS: int = 2
ACCOUNT_STORAGE_OVERHEAD: int = 128
FEE_PER_SIGNATURE: int = 5000
MAX_PROCESSING_AGE: int = 150

TransactionMatcher = Callable[[Transaction], bool]


class Fault(Enum):
    DROP = "drop"
    REJECT = "reject"


class InstructionError(Exception):
    """An instruction failed while executing."""


def rent_exempt_minimum(size: int) -> int:
    return (
        (ACCOUNT_STORAGE_OVERHEAD + size)
        * LAMPORTS_PER_BYTE_YEAR
        * EXEMPTION_THRESHOLD_YEARS
    )


def loader_instructions(txn: Transaction) -> List[loader.LoaderInstruction]:
    return [
        loader.LoaderInstruction.deserialize(Deserializer(instruction.data))
        for instruction in txn.message.decompile()
        if instruction.program_id == LOADER_PROGRAM
    ]


def has_variant(variant: int) -> TransactionMatcher:
    return lambda txn: any(ix.variant == variant for ix in loader_instructions(txn))


def write_at(offset: int) -> TransactionMatcher:
    return lambda txn: any(
        ix.variant == loader.LoaderInstruction.WRITE and ix.offset == offset
        for ix in loader_instructions(txn)
    )


class _Injected:
    def __init__(self, fault: Fault, matcher: TransactionMatcher, times: int, message: str):
        self.fault = fault
        self.matcher = matcher
        self.remaining = times
        self.message = message


class InMemoryLedger(LedgerClient):
    """A single node ledger living in process memory."""

    accounts: Dict[AccountAddress, AccountInfo]
    height: int
    latency: int
    sent: List[Transaction]
    log: List[Tuple[str, str]]
    calls: typing.Counter[str]
    compute_unit_prices: List[int]
    prioritization_fees: List[int]

    def __init__(
        self,
        client_config: ClientConfig = ClientConfig(poll_interval_in_seconds=0),
        latency: int = 0,
    ):
        self.client_config = client_config
        self.latency = latency
        self.accounts = {}
        self.height = 1
        self.sent = []
        self.log = []
        self.calls = Counter()
        self.compute_unit_prices = []
        self.prioritization_fees = []
        self._blockhashes: Dict[bytes, int] = {}
        self._statuses: Dict[str, SignatureStatus] = {}
        self._pending: Dict[str, List] = {}
        self._dropped: Set[str] = set()
        self._faults: List[_Injected] = []
        self._blockhash_counter = 0

    #
    # Test setup
    #

    def airdrop(self, address: AccountAddress, lamports: int):
        info = self.accounts.get(address)
        if info is None:
            self.accounts[address] = AccountInfo(lamports, SYSTEM_PROGRAM, b"")
        else:
            self.accounts[address] = AccountInfo(
                info.lamports + lamports, info.owner, info.data, info.executable
            )

    def install_program(
        self,
        program_id: AccountAddress,
        payload: bytes,
        authority: Optional[AccountAddress],
        max_data_len: Optional[int] = None,
    ):
        """Place a deployed program directly into ledger state."""
        programdata = AccountAddress.for_program_data(program_id)
        capacity = max(len(payload), max_data_len or 0)
        self.accounts[program_id] = AccountInfo(
            rent_exempt_minimum(loader.PROGRAM_SIZE),
            LOADER_PROGRAM,
            loader.LoaderState(loader.Program(programdata)).to_bytes(),
            True,
        )
        self.accounts[programdata] = AccountInfo(
            rent_exempt_minimum(loader.size_of_programdata(capacity)),
            LOADER_PROGRAM,
            _pack_programdata(loader.ProgramData(self.height, authority), payload, capacity),
        )

    def program_bytes(self, program_id: AccountAddress) -> bytes:
        programdata = AccountAddress.for_program_data(program_id)
        return self.accounts[programdata].data[loader.PROGRAMDATA_METADATA_SIZE :]

    def inject(
        self,
        fault: Fault,
        matcher: TransactionMatcher = lambda txn: True,
        times: int = 1,
        message: str = "Transaction simulation failed: injected fault",
    ):
        self._faults.append(_Injected(fault, matcher, times, message))

    def advance(self, blocks: int):
        self.height += blocks

    def sent_with(self, variant: int) -> List[Transaction]:
        return [txn for txn in self.sent if has_variant(variant)(txn)]

    #
    # LedgerClient
    #

    async def send_transaction(self, txn: Transaction) -> str:
        self.calls["send_transaction"] += 1
        signature = str(txn.signature())

        fault = self._match_fault(txn)
        if fault is not None and fault.fault == Fault.REJECT:
            self.log.append(("reject", signature))
            raise ApiError(fault.message, -32002)

        last_valid = self._blockhashes.get(txn.message.recent_blockhash)
        if last_valid is None or self.height > last_valid:
            self.log.append(("reject", signature))
            raise ApiError("Transaction simulation failed: Blockhash not found", -32002)
        if not txn.verify():
            self.log.append(("reject", signature))
            raise ApiError("Transaction did not pass signature verification", -32003)
        if signature in self._statuses or signature in self._pending:
            return signature

        fee = FEE_PER_SIGNATURE * len(txn.signatures)
        payer = self.accounts.get(txn.message.fee_payer())
        if payer is None or payer.lamports < fee:
            self.log.append(("reject", signature))
            raise ApiError(
                "Transaction simulation failed: insufficient funds for fee", -32002
            )

        if fault is not None and fault.fault == Fault.DROP:
            self.log.append(("drop", signature))
            self._dropped.add(signature)
            self.height = max(self.height, last_valid + 1)
            return signature

        self.sent.append(txn)
        self.log.append(("send", signature))
        if self.latency == 0:
            try:
                self._land(txn, preflight=True)
            except InstructionError as e:
                self.sent.pop()
                raise ApiError(f"Transaction simulation failed: {e}", -32002) from e
        else:
            self._pending[signature] = [txn, self.latency]
        return signature

    async def signature_status(self, signature: str) -> Optional[SignatureStatus]:
        self.calls["signature_status"] += 1
        pending = self._pending.get(signature)
        if pending is not None:
            pending[1] -= 1
            if pending[1] <= 0:
                del self._pending[signature]
                self._land(pending[0], preflight=False)
        return self._statuses.get(signature)

    async def block_height(self) -> int:
        self.calls["block_height"] += 1
        return self.height

    async def account_info(self, address: AccountAddress) -> AccountInfo:
        self.calls["account_info"] += 1
        info = self.accounts.get(address)
        if info is None:
            raise AccountNotFound(f"{address}", address)
        return info

    async def account_balance(self, address: AccountAddress) -> int:
        self.calls["account_balance"] += 1
        info = self.accounts.get(address)
        return 0 if info is None else info.lamports

    async def latest_blockhash(self) -> BlockhashInfo:
        self.calls["latest_blockhash"] += 1
        self._blockhash_counter += 1
        blockhash = hashlib.sha256(
            self._blockhash_counter.to_bytes(8, "little")
        ).digest()
        last_valid = self.height + MAX_PROCESSING_AGE
        self._blockhashes[blockhash] = last_valid
        return BlockhashInfo(blockhash, last_valid)

    async def minimum_balance_for_rent_exemption(self, size: int) -> int:
        self.calls["minimum_balance_for_rent_exemption"] += 1
        return rent_exempt_minimum(size)

    async def recent_prioritization_fees(
        self, addresses: Optional[List[AccountAddress]] = None
    ) -> List[int]:
        self.calls["recent_prioritization_fees"] += 1
        return list(self.prioritization_fees)

    async def close(self):
        pass

    #
    # Execution
    #

    def _match_fault(self, txn: Transaction) -> Optional[_Injected]:
        for fault in self._faults:
            if fault.remaining > 0 and fault.matcher(txn):
                fault.remaining -= 1
                return fault
        return None

    def _land(self, txn: Transaction, preflight: bool):
        """Execute ``txn`` atomically, charging its fee.

        With ``preflight`` a failing transaction leaves no trace; otherwise it
        lands with an error status and only its fee is charged.
        """
        signature = str(txn.signature())
        message = txn.message
        fee = FEE_PER_SIGNATURE * len(txn.signatures)

        working = dict(self.accounts)
        _debit(working, message.fee_payer(), fee)
        charged = dict(working)
        try:
            for instruction in message.decompile():
                self._execute(working, instruction)
        except InstructionError as e:
            if preflight:
                self.log.append(("reject", signature))
                raise
            self.accounts = charged
            self._statuses[signature] = SignatureStatus(self.height, "confirmed", str(e))
            self.log.append(("fail", signature))
            return

        self.accounts = {
            address: info for address, info in working.items() if info is not None
        }
        self._statuses[signature] = SignatureStatus(self.height, "confirmed")
        self.log.append(("land", signature))

    def _execute(self, accounts: Dict, instruction: Instruction):
        if instruction.program_id == SYSTEM_PROGRAM:
            self._execute_system(accounts, instruction)
        elif instruction.program_id == COMPUTE_BUDGET_PROGRAM:
            if instruction.data[0] == 3:
                self.compute_unit_prices.append(
                    Deserializer(instruction.data[1:]).u64()
                )
        elif instruction.program_id == LOADER_PROGRAM:
            self._execute_loader(accounts, instruction)
        else:
            raise InstructionError(f"Unknown program {instruction.program_id}")

    def _execute_system(self, accounts: Dict, instruction: Instruction):
        der = Deserializer(instruction.data)
        if der.u32() != 0:
            raise InstructionError("Unsupported system instruction")
        lamports = der.u64()
        space = der.u64()
        owner = AccountAddress.deserialize(der)

        funder, new_account = instruction.accounts
        if not (funder.is_signer and new_account.is_signer):
            raise InstructionError("Missing required signature")
        if accounts.get(new_account.pubkey) is not None:
            raise InstructionError(f"Account {new_account.pubkey} already in use")
        _debit(accounts, funder.pubkey, lamports)
        accounts[new_account.pubkey] = AccountInfo(lamports, owner, bytes(space))

    def _execute_loader(self, accounts: Dict, instruction: Instruction):
        ix = loader.LoaderInstruction.deserialize(Deserializer(instruction.data))
        metas = instruction.accounts
        handlers = {
            loader.LoaderInstruction.INITIALIZE_BUFFER: self._initialize_buffer,
            loader.LoaderInstruction.WRITE: self._write,
            loader.LoaderInstruction.DEPLOY_WITH_MAX_DATA_LEN: self._deploy,
            loader.LoaderInstruction.UPGRADE: self._upgrade,
            loader.LoaderInstruction.SET_AUTHORITY: self._set_authority,
            loader.LoaderInstruction.CLOSE: self._close,
            loader.LoaderInstruction.EXTEND_PROGRAM: self._extend,
            loader.LoaderInstruction.SET_AUTHORITY_CHECKED: self._set_authority,
        }
        handlers[ix.variant](accounts, metas, ix)

    def _initialize_buffer(self, accounts, metas, ix):
        buffer = _loader_account(accounts, metas[0].pubkey)
        if not isinstance(_state(buffer), loader.Uninitialized):
            raise InstructionError("Account already initialized")
        accounts[metas[0].pubkey] = _replace_state(
            buffer, loader.Buffer(metas[1].pubkey), loader.BUFFER_METADATA_SIZE
        )

    def _write(self, accounts, metas, ix):
        buffer = _loader_account(accounts, metas[0].pubkey)
        state = _state(buffer)
        if not isinstance(state, loader.Buffer):
            raise InstructionError("Invalid account data")
        _check_authority(state.authority, metas[1])

        start = loader.BUFFER_METADATA_SIZE + ix.offset
        end = start + len(ix.data)
        if end > len(buffer.data):
            raise InstructionError("Account data too small")
        data = buffer.data[:start] + ix.data + buffer.data[end:]
        accounts[metas[0].pubkey] = AccountInfo(buffer.lamports, buffer.owner, data)

    def _deploy(self, accounts, metas, ix):
        payer, programdata, program, buffer_meta, _, _, _, authority = metas
        program_account = _loader_account(accounts, program.pubkey)
        if not isinstance(_state(program_account), loader.Uninitialized):
            raise InstructionError("Program account already initialized")
        if programdata.pubkey != AccountAddress.for_program_data(program.pubkey):
            raise InstructionError("Invalid program data address")
        if accounts.get(programdata.pubkey) is not None:
            raise InstructionError("Program data account already in use")

        buffer = _loader_account(accounts, buffer_meta.pubkey)
        state = _state(buffer)
        if not isinstance(state, loader.Buffer):
            raise InstructionError("Invalid buffer account")
        _check_authority(state.authority, authority)

        payload = buffer.data[loader.BUFFER_METADATA_SIZE :]
        if ix.max_data_len < len(payload):
            raise InstructionError("Max data length is too small to hold the program")

        size = loader.size_of_programdata(ix.max_data_len)
        rent = rent_exempt_minimum(size)
        _credit(accounts, payer.pubkey, buffer.lamports)
        accounts[buffer_meta.pubkey] = None
        _debit(accounts, payer.pubkey, rent)

        accounts[programdata.pubkey] = AccountInfo(
            rent,
            LOADER_PROGRAM,
            _pack_programdata(
                loader.ProgramData(self.height, authority.pubkey),
                payload,
                ix.max_data_len,
            ),
        )
        accounts[program.pubkey] = AccountInfo(
            program_account.lamports,
            LOADER_PROGRAM,
            loader.LoaderState(loader.Program(programdata.pubkey)).to_bytes(),
            True,
        )

    def _upgrade(self, accounts, metas, ix):
        programdata_meta, program, buffer_meta, spill, _, _, authority = metas
        program_account = _loader_account(accounts, program.pubkey)
        program_state = _state(program_account)
        if (
            not isinstance(program_state, loader.Program)
            or program_state.programdata_address != programdata_meta.pubkey
        ):
            raise InstructionError("Invalid program account")

        programdata = _loader_account(accounts, programdata_meta.pubkey)
        programdata_state = _state(programdata)
        if not isinstance(programdata_state, loader.ProgramData):
            raise InstructionError("Invalid program data account")
        if programdata_state.upgrade_authority is None:
            raise InstructionError("Program is immutable")
        _check_authority(programdata_state.upgrade_authority, authority)

        buffer = _loader_account(accounts, buffer_meta.pubkey)
        buffer_state = _state(buffer)
        if not isinstance(buffer_state, loader.Buffer):
            raise InstructionError("Invalid buffer account")
        if buffer_state.authority != authority.pubkey:
            raise InstructionError("Buffer and upgrade authority don't match")

        payload = buffer.data[loader.BUFFER_METADATA_SIZE :]
        capacity = len(programdata.data) - loader.PROGRAMDATA_METADATA_SIZE
        if len(payload) > capacity:
            raise InstructionError("Buffer account data is too large for the program")

        accounts[programdata_meta.pubkey] = AccountInfo(
            programdata.lamports,
            LOADER_PROGRAM,
            _pack_programdata(
                loader.ProgramData(self.height, authority.pubkey), payload, capacity
            ),
        )
        _credit(accounts, spill.pubkey, buffer.lamports)
        accounts[buffer_meta.pubkey] = None

    def _set_authority(self, accounts, metas, ix):
        account_meta, current = metas[0], metas[1]
        new = metas[2] if len(metas) > 2 else None
        if ix.variant == loader.LoaderInstruction.SET_AUTHORITY_CHECKED and (
            new is None or not new.is_signer
        ):
            raise InstructionError("New authority did not sign")

        account = _loader_account(accounts, account_meta.pubkey)
        state = _state(account)
        if isinstance(state, loader.Buffer):
            if new is None:
                raise InstructionError("Buffer authority is not optional")
            _check_authority(state.authority, current)
            accounts[account_meta.pubkey] = _replace_state(
                account, loader.Buffer(new.pubkey), loader.BUFFER_METADATA_SIZE
            )
        elif isinstance(state, loader.ProgramData):
            if state.upgrade_authority is None:
                raise InstructionError("Program is immutable")
            _check_authority(state.upgrade_authority, current)
            accounts[account_meta.pubkey] = _replace_state(
                account,
                loader.ProgramData(state.slot, new.pubkey if new else None),
                loader.PROGRAMDATA_METADATA_SIZE,
            )
        else:
            raise InstructionError("Invalid account data")

    def _close(self, accounts, metas, ix):
        account_meta, recipient = metas[0], metas[1]
        if account_meta.pubkey == recipient.pubkey:
            raise InstructionError("Recipient is the same as the account being closed")

        account = _loader_account(accounts, account_meta.pubkey)
        state = _state(account)
        if isinstance(state, loader.Buffer):
            _check_authority(state.authority, metas[2] if len(metas) > 2 else None)
        elif isinstance(state, loader.ProgramData):
            if len(metas) < 4:
                raise InstructionError("Program account required to close program data")
            program_state = _state(_loader_account(accounts, metas[3].pubkey))
            if (
                not isinstance(program_state, loader.Program)
                or program_state.programdata_address != account_meta.pubkey
            ):
                raise InstructionError("Program account does not match")
            if state.upgrade_authority is None:
                raise InstructionError("Program is immutable")
            _check_authority(state.upgrade_authority, metas[2])
        elif not isinstance(state, loader.Uninitialized):
            raise InstructionError("Account does not support closing")

        _credit(accounts, recipient.pubkey, account.lamports)
        accounts[account_meta.pubkey] = None

    def _extend(self, accounts, metas, ix):
        programdata_meta, program, _, payer = metas
        programdata = _loader_account(accounts, programdata_meta.pubkey)
        state = _state(programdata)
        if not isinstance(state, loader.ProgramData):
            raise InstructionError("Invalid program data account")
        program_state = _state(_loader_account(accounts, program.pubkey))
        if (
            not isinstance(program_state, loader.Program)
            or program_state.programdata_address != programdata_meta.pubkey
        ):
            raise InstructionError("Program account does not match")
        if state.upgrade_authority is None:
            raise InstructionError("Cannot extend an immutable program")
        if ix.additional_bytes == 0:
            raise InstructionError("Additional bytes must be greater than 0")

        data = programdata.data + bytes(ix.additional_bytes)
        rent = rent_exempt_minimum(len(data))
        top_up = max(0, rent - programdata.lamports)
        _debit(accounts, payer.pubkey, top_up)
        accounts[programdata_meta.pubkey] = AccountInfo(
            programdata.lamports + top_up, LOADER_PROGRAM, data
        )


def _debit(accounts: Dict, address: AccountAddress, lamports: int):
    info = accounts.get(address)
    if info is None or info.lamports < lamports:
        raise InstructionError(f"Account {address} has insufficient funds")
    accounts[address] = AccountInfo(
        info.lamports - lamports, info.owner, info.data, info.executable
    )


def _credit(accounts: Dict, address: AccountAddress, lamports: int):
    info = accounts.get(address)
    if info is None:
        accounts[address] = AccountInfo(lamports, SYSTEM_PROGRAM, b"")
    else:
        accounts[address] = AccountInfo(
            info.lamports + lamports, info.owner, info.data, info.executable
        )


def _loader_account(accounts: Dict, address: AccountAddress) -> AccountInfo:
    info = accounts.get(address)
    if info is None:
        raise InstructionError(f"Account {address} not found")
    if info.owner != LOADER_PROGRAM:
        raise InstructionError(f"Account {address} is not owned by the loader")
    return info


def _state(info: AccountInfo) -> typing.Any:
    try:
        return loader.LoaderState.from_account_data(info.data).value
    except Exception as e:
        raise InstructionError(f"Invalid account data: {e}") from e


def _check_authority(expected: Optional[AccountAddress], meta):
    if expected is None:
        raise InstructionError("Account is immutable")
    if meta is None or meta.pubkey != expected:
        raise InstructionError("Incorrect authority provided")
    if not meta.is_signer:
        raise InstructionError("Authority did not sign")


def _with_state(data: bytes, state: loader.LoaderState, metadata_size: int) -> bytes:
    header = state.to_bytes().ljust(metadata_size, b"\x00")
    return header + data[metadata_size:]


def _replace_state(info: AccountInfo, state: typing.Any, metadata_size: int) -> AccountInfo:
    return AccountInfo(
        info.lamports,
        info.owner,
        _with_state(info.data, loader.LoaderState(state), metadata_size),
        info.executable,
    )


def _pack_programdata(
    state: loader.ProgramData, payload: bytes, capacity: int
) -> bytes:
    header = loader.LoaderState(state).to_bytes().ljust(
        loader.PROGRAMDATA_METADATA_SIZE, b"\x00"
    )
    return header + payload.ljust(capacity, b"\x00")


class Test(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.ledger = InMemoryLedger()
        self.payer = Keypair.generate()
        self.authority = Keypair.generate()
        self.ledger.airdrop(self.payer.address(), 100 * LAMPORTS_PER_SOL)

    async def send(self, instructions: List[Instruction], signers: List[Keypair]) -> str:
        window = await self.ledger.latest_blockhash()
        message = Message.compile(instructions, self.payer.address(), window.blockhash)
        return await self.ledger.send_transaction(
            Transaction.new(message, [self.payer, *signers])
        )

    async def create_buffer(self, payload: bytes) -> AccountAddress:
        buffer = Keypair.generate()
        rent = rent_exempt_minimum(loader.size_of_buffer(len(payload)))
        await self.send(
            loader.create_buffer(
                self.payer.address(),
                buffer.address(),
                self.authority.address(),
                rent,
                len(payload),
            ),
            [buffer],
        )
        await self.send(
            [loader.write(buffer.address(), self.authority.address(), 0, payload)],
            [self.authority],
        )
        return buffer.address()

    async def test_deploy_and_upgrade(self):
        program = Keypair.generate()
        buffer = await self.create_buffer(b"\x01" * 100)
        await self.send(
            loader.deploy_with_max_program_len(
                self.payer.address(),
                program.address(),
                buffer,
                self.authority.address(),
                rent_exempt_minimum(loader.PROGRAM_SIZE),
                200,
            ),
            [program, self.authority],
        )
        self.assertNotIn(buffer, self.ledger.accounts)
        self.assertEqual(
            self.ledger.program_bytes(program.address()), b"\x01" * 100 + bytes(100)
        )

        buffer = await self.create_buffer(b"\x02" * 150)
        await self.send(
            [
                loader.upgrade(
                    program.address(),
                    buffer,
                    self.authority.address(),
                    self.payer.address(),
                )
            ],
            [self.authority],
        )
        self.assertEqual(
            self.ledger.program_bytes(program.address()), b"\x02" * 150 + bytes(50)
        )

    async def test_rejects_bad_authority(self):
        buffer = await self.create_buffer(b"\x01" * 10)
        other = Keypair.generate()
        with self.assertRaisesRegex(ApiError, "Incorrect authority"):
            await self.send([loader.write(buffer, other.address(), 0, b"\x00")], [other])

    async def test_rejects_expired_blockhash(self):
        window = await self.ledger.latest_blockhash()
        self.ledger.advance(MAX_PROCESSING_AGE + 1)
        message = Message.compile(
            [loader.set_compute_unit_price(1)], self.payer.address(), window.blockhash
        )
        with self.assertRaisesRegex(ApiError, "Blockhash not found"):
            await self.ledger.send_transaction(Transaction.new(message, [self.payer]))

    async def test_faults_and_latency(self):
        self.ledger.latency = 2
        self.ledger.inject(Fault.DROP, has_variant(loader.LoaderInstruction.WRITE))

        buffer = Keypair.generate()
        signature = await self.send(
            loader.create_buffer(
                self.payer.address(),
                buffer.address(),
                self.authority.address(),
                rent_exempt_minimum(loader.size_of_buffer(4)),
                4,
            ),
            [buffer],
        )
        self.assertIsNone(await self.ledger.signature_status(signature))
        status = await self.ledger.signature_status(signature)
        self.assertTrue(status.is_confirmed())

        dropped = await self.send(
            [loader.write(buffer.address(), self.authority.address(), 0, b"\x01")],
            [self.authority],
        )
        self.assertIsNone(await self.ledger.signature_status(dropped))
        self.assertIn(("drop", dropped), self.ledger.log)
        self.assertEqual(len(self.ledger.sent), 1)
