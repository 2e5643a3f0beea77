# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Administrative operations on deployed programs and staging buffers.

These are the single transaction operations an operator runs around a
deployment: inspecting a program or buffer, handing its authority to another
key or removing it for good, reclaiming the rent of a program or an abandoned
buffer, and growing a program's data account ahead of a larger upgrade.
"""

from __future__ import annotations

import logging
import os
import statistics
import tempfile
import unittest
from dataclasses import dataclass
from typing import List, Optional, Union

from . import loader
from .address import LOADER_PROGRAM, AccountAddress
from .async_client import LedgerClient
from .deployer import DeploymentTarget, ProgramDeployer
from .errors import AuthorityError, StagingStateError
from .keypair import Keypair
from .memory_ledger import LAMPORTS_PER_SOL, InMemoryLedger
from .staging import StagingLifecycle
from .transaction_worker import BatchSubmitter, RetryBudget, SubmitterConfig
from .transactions import Instruction
from .validity_window import ValidityWindow
from .verifier import StateVerifier


@dataclass
class ProgramInfo:
    program_id: AccountAddress
    programdata_address: AccountAddress
    authority: Optional[AccountAddress]
    last_deploy_slot: int
    data_len: int
    lamports: int

    def __str__(self) -> str:
        authority = self.authority if self.authority is not None else "none"
        return (
            f"Program Id: {self.program_id}\n"
            f"ProgramData Address: {self.programdata_address}\n"
            f"Authority: {authority}\n"
            f"Last Deployed In Slot: {self.last_deploy_slot}\n"
            f"Data Length: {self.data_len} bytes\n"
            f"Balance: {self.lamports / LAMPORTS_PER_SOL} SOL"
        )


@dataclass
class BufferInfo:
    address: AccountAddress
    authority: Optional[AccountAddress]
    data_len: int
    lamports: int

    def __str__(self) -> str:
        authority = self.authority if self.authority is not None else "none"
        return (
            f"Buffer Address: {self.address}\n"
            f"Authority: {authority}\n"
            f"Data Length: {self.data_len} bytes\n"
            f"Balance: {self.lamports / LAMPORTS_PER_SOL} SOL"
        )


class ProgramManager:
    _client: LedgerClient
    _fee_payer: Keypair
    _priority_fee: Optional[int]
    _submitter: BatchSubmitter
    _staging: StagingLifecycle
    _verifier: StateVerifier

    def __init__(
        self,
        client: LedgerClient,
        fee_payer: Keypair,
        budget: RetryBudget = RetryBudget(),
        priority_fee: Optional[int] = None,
    ):
        self._client = client
        self._fee_payer = fee_payer
        self._priority_fee = priority_fee
        self._submitter = BatchSubmitter(
            client, fee_payer, SubmitterConfig(), budget, ValidityWindow(client)
        )
        self._staging = StagingLifecycle(client, fee_payer, self._submitter, priority_fee)
        self._verifier = StateVerifier(client)

    async def show(self, address: AccountAddress) -> Union[ProgramInfo, BufferInfo]:
        """Describe the program or buffer at ``address``.

        :raises AccountNotFound: If there is no account at ``address``.
        :raises AuthorityError: If it is neither a program nor a buffer.
        """
        info = await self._client.account_info(address)
        state = None
        if info.owner == LOADER_PROGRAM:
            state = loader.LoaderState.from_account_data(info.data).value

        if isinstance(state, loader.Buffer):
            return BufferInfo(
                address,
                state.authority,
                len(info.data) - loader.BUFFER_METADATA_SIZE,
                info.lamports,
            )
        if isinstance(state, loader.Program):
            programdata = await self._client.account_info(state.programdata_address)
            programdata_state = loader.LoaderState.from_account_data(
                programdata.data
            ).value
            if isinstance(programdata_state, loader.ProgramData):
                return ProgramInfo(
                    address,
                    state.programdata_address,
                    programdata_state.upgrade_authority,
                    programdata_state.slot,
                    len(programdata.data) - loader.PROGRAMDATA_METADATA_SIZE,
                    info.lamports + programdata.lamports,
                )
        raise AuthorityError(
            AuthorityError.NOT_FOUND,
            address,
            detail="account is neither an upgradeable program nor a buffer",
        )

    async def set_upgrade_authority(
        self,
        program_id: AccountAddress,
        authority: Keypair,
        new_authority: Optional[AccountAddress],
        new_authority_signer: Optional[Keypair] = None,
    ) -> str:
        """Hand the program to ``new_authority``, or make it final with ``None``.

        When ``new_authority_signer`` is given the change is checked: the new
        authority co-signs, so a mistyped address cannot lock the program.
        """
        await self._verifier.check_mutable(program_id, authority.address())
        programdata = AccountAddress.for_program_data(program_id)

        signers = [authority]
        if new_authority_signer is not None:
            if new_authority_signer.address() != new_authority:
                raise ValueError("new_authority_signer does not match new_authority")
            instruction = loader.set_authority_checked(
                programdata, authority.address(), new_authority_signer.address()
            )
            signers.append(new_authority_signer)
        else:
            instruction = loader.set_authority(
                programdata, authority.address(), new_authority
            )

        signature = await self._send([instruction], signers)
        if new_authority is None:
            logging.info(f"Program {program_id} is now immutable")
        else:
            logging.info(f"Upgrade authority of {program_id} is now {new_authority}")
        return signature

    async def set_buffer_authority(
        self,
        buffer: AccountAddress,
        authority: Keypair,
        new_authority: AccountAddress,
    ) -> str:
        """Hand a buffer to ``new_authority``. Buffers cannot be made final."""
        await self._staging.verify_writable(buffer, authority.address())
        return await self._send(
            [loader.set_authority(buffer, authority.address(), new_authority)],
            [authority],
        )

    async def close(
        self,
        address: AccountAddress,
        authority: Keypair,
        recipient: Optional[AccountAddress] = None,
    ) -> int:
        """Close a buffer or a program and return the lamports reclaimed.

        A closed program can never be deployed to the same address again.
        """
        recipient = recipient if recipient is not None else self._fee_payer.address()
        shown = await self.show(address)

        if isinstance(shown, BufferInfo):
            if shown.authority != authority.address():
                raise StagingStateError(
                    address, f"authority is {shown.authority}, expected {authority.address()}"
                )
            instruction = loader.close(address, recipient, authority.address())
            reclaimed = shown.lamports
        else:
            await self._verifier.check_mutable(address, authority.address())
            programdata = await self._client.account_info(shown.programdata_address)
            instruction = loader.close(
                shown.programdata_address, recipient, authority.address(), address
            )
            reclaimed = programdata.lamports

        await self._send([instruction], [authority])
        logging.info(f"Closed {address}, reclaimed {reclaimed} lamports to {recipient}")
        return reclaimed

    async def extend(self, program_id: AccountAddress, additional_bytes: int) -> str:
        """Grow the program data account of ``program_id`` by ``additional_bytes``.

        The fee payer funds the extra rent.
        """
        if additional_bytes <= 0:
            raise ValueError("additional_bytes must be positive")
        if await self._verifier.upgrade_authority(program_id) is None:
            raise AuthorityError(AuthorityError.IMMUTABLE, program_id)
        return await self._send(
            [
                loader.extend_program(
                    program_id, self._fee_payer.address(), additional_bytes
                )
            ],
            [],
        )

    async def dump(self, address: AccountAddress, path: str) -> int:
        """Write the payload held at ``address`` to ``path``.

        Programs are dumped from their program data account and buffers
        without their header. Any other account is written as is.

        :return: The number of bytes written.
        """
        info = await self._client.account_info(address)
        data = info.data
        if info.owner == LOADER_PROGRAM:
            state = loader.LoaderState.from_account_data(info.data).value
            if isinstance(state, loader.Program):
                programdata = await self._client.account_info(state.programdata_address)
                data = programdata.data[loader.PROGRAMDATA_METADATA_SIZE :]
            elif isinstance(state, loader.ProgramData):
                data = info.data[loader.PROGRAMDATA_METADATA_SIZE :]
            elif isinstance(state, loader.Buffer):
                data = info.data[loader.BUFFER_METADATA_SIZE :]

        with open(path, "wb") as file:
            file.write(data)
        logging.info(f"Dumped {len(data)} bytes of {address} to {path}")
        return len(data)

    async def recommended_priority_fee(
        self, addresses: Optional[List[AccountAddress]] = None
    ) -> int:
        """Median of recently paid compute unit prices, or 0 if none were paid."""
        fees = await self._client.recent_prioritization_fees(addresses)
        if not fees:
            return 0
        return int(statistics.median(fees))

    async def _send(self, instructions: List[Instruction], signers: List[Keypair]) -> str:
        if self._priority_fee is not None:
            instructions = [loader.set_compute_unit_price(self._priority_fee)] + instructions
        return await self._submitter.submit_one(instructions, signers)


class Test(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.ledger = InMemoryLedger()
        self.payer = Keypair.generate()
        self.authority = Keypair.generate()
        self.program = Keypair.generate().address()
        self.ledger.airdrop(self.payer.address(), 100 * LAMPORTS_PER_SOL)
        self.ledger.install_program(self.program, b"\x01" * 512, self.authority.address())
        self.manager = ProgramManager(self.ledger, self.payer)

    async def buffer(self, authority: Keypair) -> AccountAddress:
        submitter = BatchSubmitter(self.ledger, self.payer)
        lifecycle = StagingLifecycle(self.ledger, self.payer, submitter)
        staging = await lifecycle.create(256, authority.address())
        return staging.address

    async def test_show(self):
        shown = await self.manager.show(self.program)
        self.assertIsInstance(shown, ProgramInfo)
        self.assertEqual(shown.authority, self.authority.address())
        self.assertEqual(shown.data_len, 512)
        self.assertEqual(
            shown.programdata_address, AccountAddress.for_program_data(self.program)
        )
        self.assertIn("Data Length: 512 bytes", str(shown))

        buffer = await self.buffer(self.authority)
        shown = await self.manager.show(buffer)
        self.assertIsInstance(shown, BufferInfo)
        self.assertEqual(shown.data_len, 256)

        with self.assertRaises(AuthorityError):
            await self.manager.show(self.payer.address())

    async def test_set_upgrade_authority(self):
        new_authority = Keypair.generate()
        await self.manager.set_upgrade_authority(
            self.program, self.authority, new_authority.address()
        )
        shown = await self.manager.show(self.program)
        self.assertEqual(shown.authority, new_authority.address())

        with self.assertRaises(AuthorityError) as cm:
            await self.manager.set_upgrade_authority(
                self.program, self.authority, self.authority.address()
            )
        self.assertEqual(cm.exception.kind, AuthorityError.MISMATCH)

        # Checked hand back requires the new authority to sign
        await self.manager.set_upgrade_authority(
            self.program,
            new_authority,
            self.authority.address(),
            self.authority,
        )
        self.assertEqual(
            (await self.manager.show(self.program)).authority, self.authority.address()
        )

    async def test_make_final(self):
        await self.manager.set_upgrade_authority(self.program, self.authority, None)
        shown = await self.manager.show(self.program)
        self.assertIsNone(shown.authority)
        self.assertIn("Authority: none", str(shown))

        with self.assertRaises(AuthorityError) as cm:
            await self.manager.set_upgrade_authority(self.program, self.authority, None)
        self.assertEqual(cm.exception.kind, AuthorityError.IMMUTABLE)

        with self.assertRaises(AuthorityError):
            await self.manager.extend(self.program, 1024)

    async def test_set_buffer_authority(self):
        buffer = await self.buffer(self.authority)
        new_authority = Keypair.generate()
        await self.manager.set_buffer_authority(
            buffer, self.authority, new_authority.address()
        )
        self.assertEqual(
            (await self.manager.show(buffer)).authority, new_authority.address()
        )

        with self.assertRaises(StagingStateError):
            await self.manager.set_buffer_authority(
                buffer, self.authority, self.authority.address()
            )

    async def test_close_buffer(self):
        buffer = await self.buffer(self.authority)
        recipient = Keypair.generate().address()
        lamports = self.ledger.accounts[buffer].lamports

        reclaimed = await self.manager.close(buffer, self.authority, recipient)
        self.assertEqual(reclaimed, lamports)
        self.assertNotIn(buffer, self.ledger.accounts)
        self.assertEqual(await self.ledger.account_balance(recipient), lamports)

    async def test_close_program(self):
        programdata = AccountAddress.for_program_data(self.program)
        lamports = self.ledger.accounts[programdata].lamports

        reclaimed = await self.manager.close(self.program, self.authority)
        self.assertEqual(reclaimed, lamports)
        self.assertNotIn(programdata, self.ledger.accounts)
        self.assertFalse(await StateVerifier(self.ledger).program_exists(self.program))

    async def test_extend(self):
        await self.manager.extend(self.program, 1024)
        shown = await self.manager.show(self.program)
        self.assertEqual(shown.data_len, 512 + 1024)
        with self.assertRaises(ValueError):
            await self.manager.extend(self.program, 0)

    async def test_recommended_priority_fee(self):
        self.assertEqual(await self.manager.recommended_priority_fee(), 0)
        self.ledger.prioritization_fees = [0, 10, 5000, 20, 30]
        self.assertEqual(await self.manager.recommended_priority_fee(), 20)

    async def test_dump(self):
        payload = os.urandom(3000)
        deployer = ProgramDeployer(self.ledger, self.payer)
        program = Keypair.generate()
        await deployer.deploy(DeploymentTarget.new(program, self.authority), payload)

        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "program.so")
            self.assertEqual(await self.manager.dump(program.address(), path), 3000)
            with open(path, "rb") as file:
                self.assertEqual(file.read(), payload)

            staging = await deployer.write_buffer(payload[:1000], self.authority)
            await self.manager.dump(staging.address, path)
            with open(path, "rb") as file:
                self.assertEqual(file.read(), payload[:1000])

            # Accounts outside the loader are dumped raw
            self.assertEqual(await self.manager.dump(self.payer.address(), path), 0)
