# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Read-only checks on program accounts.

A program is mutable by an authority when its program account is a loader
owned ``Program`` pointing at a ``ProgramData`` account whose upgrade
authority is that authority. :class:`StateVerifier` checks this before any
resources are spent on a deployment.
"""

from __future__ import annotations

import unittest
import unittest.mock
from typing import Optional

import httpx

from . import loader
from .address import LOADER_PROGRAM, AccountAddress
from .async_client import TRANSPORT_ERRORS, AccountInfo, AccountNotFound, LedgerClient
from .errors import AuthorityError, Phase, SubmissionError
from .keypair import Keypair
from .memory_ledger import InMemoryLedger
from .transaction_worker import classify_error


class StateVerifier:
    _client: LedgerClient

    def __init__(self, client: LedgerClient):
        self._client = client

    async def account_exists(self, address: AccountAddress) -> bool:
        """True if any account, program or not, lives at ``address``."""
        try:
            await self._account_info(address)
        except AccountNotFound:
            return False
        return True

    async def program_exists(self, program_id: AccountAddress) -> bool:
        """True if ``program_id`` holds a deployed program, mutable or not."""
        try:
            await self._programdata(program_id)
        except AuthorityError:
            return False
        return True

    async def check_mutable(
        self, program_id: AccountAddress, expected_authority: AccountAddress
    ) -> AccountAddress:
        """Return the current upgrade authority if it is ``expected_authority``.

        Raises:
            AuthorityError: NOT_FOUND when there is no deployed program at
                ``program_id``, IMMUTABLE when its authority was removed and
                MISMATCH when another authority controls it.
        """
        state = await self._programdata(program_id)
        if state.upgrade_authority is None:
            raise AuthorityError(AuthorityError.IMMUTABLE, program_id)
        if state.upgrade_authority != expected_authority:
            raise AuthorityError(
                AuthorityError.MISMATCH,
                program_id,
                expected_authority,
                state.upgrade_authority,
            )
        return state.upgrade_authority

    async def upgrade_authority(
        self, program_id: AccountAddress
    ) -> Optional[AccountAddress]:
        state = await self._programdata(program_id)
        return state.upgrade_authority

    async def program_capacity(self, program_id: AccountAddress) -> int:
        """Bytes of program the program data account of ``program_id`` can hold."""
        await self._programdata(program_id)
        info = await self._account_info(AccountAddress.for_program_data(program_id))
        return len(info.data) - loader.PROGRAMDATA_METADATA_SIZE

    async def _programdata(self, program_id: AccountAddress) -> loader.ProgramData:
        program = await self._loader_state(program_id, program_id, "program account")
        if not isinstance(program, loader.Program):
            raise AuthorityError(
                AuthorityError.NOT_FOUND,
                program_id,
                detail=f"account holds {program}",
            )

        programdata = await self._loader_state(
            program_id, program.programdata_address, "program data account"
        )
        if not isinstance(programdata, loader.ProgramData):
            raise AuthorityError(
                AuthorityError.NOT_FOUND,
                program_id,
                detail=f"program data account holds {programdata}",
            )
        return programdata

    async def _loader_state(
        self, program_id: AccountAddress, address: AccountAddress, name: str
    ):
        try:
            info = await self._account_info(address)
        except AccountNotFound as e:
            raise AuthorityError(
                AuthorityError.NOT_FOUND, program_id, detail=f"no {name}"
            ) from e

        if info.owner != LOADER_PROGRAM:
            raise AuthorityError(
                AuthorityError.NOT_FOUND,
                program_id,
                detail=f"{name} is owned by {info.owner}",
            )
        try:
            return loader.LoaderState.from_account_data(info.data).value
        except Exception as e:
            raise AuthorityError(
                AuthorityError.NOT_FOUND,
                program_id,
                detail=f"unreadable {name}: {e}",
            ) from e


    async def _account_info(self, address: AccountAddress) -> AccountInfo:
        try:
            return await self._client.account_info(address)
        except TRANSPORT_ERRORS as e:
            raise classify_error(e, phase=Phase.VERIFY) from e


class Test(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.ledger = InMemoryLedger()
        self.verifier = StateVerifier(self.ledger)
        self.program = Keypair.generate().address()
        self.authority = Keypair.generate().address()

    async def test_mutable(self):
        self.ledger.install_program(self.program, b"\x01" * 64, self.authority)
        authority = await self.verifier.check_mutable(self.program, self.authority)
        self.assertEqual(authority, self.authority)
        self.assertTrue(await self.verifier.program_exists(self.program))
        self.assertEqual(await self.verifier.program_capacity(self.program), 64)

    async def test_not_found(self):
        with self.assertRaises(AuthorityError) as cm:
            await self.verifier.check_mutable(self.program, self.authority)
        self.assertEqual(cm.exception.kind, AuthorityError.NOT_FOUND)
        self.assertEqual(cm.exception.phase, Phase.VERIFY)
        self.assertFalse(await self.verifier.program_exists(self.program))

        # A funded system account is not a program
        self.ledger.airdrop(self.program, 1_000)
        with self.assertRaises(AuthorityError) as cm:
            await self.verifier.check_mutable(self.program, self.authority)
        self.assertEqual(cm.exception.kind, AuthorityError.NOT_FOUND)

    async def test_closed_program_data(self):
        self.ledger.install_program(self.program, b"\x01" * 64, self.authority)
        del self.ledger.accounts[AccountAddress.for_program_data(self.program)]
        with self.assertRaises(AuthorityError) as cm:
            await self.verifier.check_mutable(self.program, self.authority)
        self.assertEqual(cm.exception.kind, AuthorityError.NOT_FOUND)

    async def test_immutable(self):
        self.ledger.install_program(self.program, b"\x01" * 64, None)
        with self.assertRaises(AuthorityError) as cm:
            await self.verifier.check_mutable(self.program, self.authority)
        self.assertEqual(cm.exception.kind, AuthorityError.IMMUTABLE)
        self.assertTrue(await self.verifier.program_exists(self.program))

    async def test_mismatch(self):
        other = Keypair.generate().address()
        self.ledger.install_program(self.program, b"\x01" * 64, other)
        with self.assertRaises(AuthorityError) as cm:
            await self.verifier.check_mutable(self.program, self.authority)
        self.assertEqual(cm.exception.kind, AuthorityError.MISMATCH)
        self.assertEqual(cm.exception.expected, self.authority)
        self.assertEqual(cm.exception.actual, other)
        self.assertEqual(await self.verifier.upgrade_authority(self.program), other)

    async def test_reads_only(self):
        self.ledger.install_program(self.program, b"\x01" * 64, self.authority)
        await self.verifier.check_mutable(self.program, self.authority)
        self.assertEqual(self.ledger.sent, [])
        self.assertEqual(self.ledger.calls["send_transaction"], 0)

    async def test_account_exists(self):
        self.assertFalse(await self.verifier.account_exists(self.program))
        self.ledger.airdrop(self.program, 1_000)
        self.assertTrue(await self.verifier.account_exists(self.program))
        self.assertFalse(await self.verifier.program_exists(self.program))

    async def test_read_errors_are_classified(self):
        self.ledger.install_program(self.program, b"\x01" * 64, self.authority)
        with unittest.mock.patch.object(
            self.ledger,
            "account_info",
            side_effect=httpx.ReadTimeout("timed out"),
        ):
            with self.assertRaises(SubmissionError) as cm:
                await self.verifier.check_mutable(self.program, self.authority)
        self.assertEqual(cm.exception.kind, SubmissionError.TIMEOUT)
        self.assertEqual(cm.exception.phase, Phase.VERIFY)
        self.assertTrue(cm.exception.retryable)
