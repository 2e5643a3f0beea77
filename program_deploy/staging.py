# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Staging buffer lifecycle.

A staging buffer is a loader owned account that receives the payload chunk
by chunk before it is deployed or swapped into a program. Buffers move
through these states and never back:

    UNFUNDED -> FUNDED -> WRITING -> COMPLETE -> CONSUMED

Buffers are created fresh for every deployment attempt. A buffer left behind
by a failed attempt is abandoned; its rent can be reclaimed later with
``close``.
"""

from __future__ import annotations

import logging
import unittest
import unittest.mock
from enum import Enum
from typing import Optional

import httpx

from . import loader
from .address import LOADER_PROGRAM, SYSTEM_PROGRAM, AccountAddress
from .async_client import TRANSPORT_ERRORS, AccountNotFound, LedgerClient
from .errors import (
    DeployError,
    FundingError,
    Phase,
    StagingStateError,
    SubmissionError,
)
from .keypair import Keypair
from .memory_ledger import InMemoryLedger
from .transaction_worker import BatchSubmitter, classify_error


class StagingState(Enum):
    UNFUNDED = 0
    FUNDED = 1
    WRITING = 2
    COMPLETE = 3
    CONSUMED = 4


class StagingAccount:
    """A staging buffer owned by one deployment attempt.

    Attributes:
        address: The buffer address.
        capacity: Bytes of payload the buffer can hold.
        authority: The address allowed to write to and deploy from the buffer.
        state: Where the buffer is in its lifecycle.
        keypair: The buffer keypair when this process created the buffer.
    """

    address: AccountAddress
    capacity: int
    authority: AccountAddress
    state: StagingState
    keypair: Optional[Keypair]

    def __init__(
        self,
        address: AccountAddress,
        capacity: int,
        authority: AccountAddress,
        state: StagingState = StagingState.UNFUNDED,
        keypair: Optional[Keypair] = None,
    ):
        self.address = address
        self.capacity = capacity
        self.authority = authority
        self.state = state
        self.keypair = keypair

    def __repr__(self) -> str:
        return f"StagingAccount({self.address}, {self.capacity} bytes, {self.state.name})"

    def advance(self, state: StagingState):
        if state.value < self.state.value:
            raise StagingStateError(
                self.address, f"cannot move from {self.state.name} to {state.name}"
            )
        self.state = state


class StagingLifecycle:
    """Creates staging buffers and checks that they are still writable."""

    _client: LedgerClient
    _fee_payer: Keypair
    _submitter: BatchSubmitter
    _compute_unit_price: Optional[int]

    def __init__(
        self,
        client: LedgerClient,
        fee_payer: Keypair,
        submitter: BatchSubmitter,
        compute_unit_price: Optional[int] = None,
    ):
        self._client = client
        self._fee_payer = fee_payer
        self._submitter = submitter
        self._compute_unit_price = compute_unit_price

    async def create(
        self,
        capacity: int,
        authority: AccountAddress,
        keypair: Optional[Keypair] = None,
    ) -> StagingAccount:
        """Fund and initialize a new buffer able to hold ``capacity`` bytes.

        Raises:
            FundingError: If the fee payer cannot cover the rent exempt minimum.
            DeployError: If no loader account can be that large.
            SubmissionError: If the create transaction does not land.
        """
        if loader.size_of_buffer(capacity) > loader.MAX_PERMITTED_DATA_LENGTH:
            raise DeployError(
                f"A buffer of {capacity} bytes exceeds the loader account limit of "
                f"{loader.MAX_PERMITTED_DATA_LENGTH} bytes",
                Phase.STAGE_CREATE,
            )
        keypair = keypair if keypair is not None else Keypair.generate()
        account = StagingAccount(keypair.address(), capacity, authority, keypair=keypair)

        try:
            rent = await self._client.minimum_balance_for_rent_exemption(
                loader.size_of_buffer(capacity)
            )
            balance = await self._client.account_balance(self._fee_payer.address())
        except TRANSPORT_ERRORS as e:
            raise classify_error(e, phase=Phase.STAGE_CREATE) from e
        if balance < rent:
            raise FundingError(rent, balance)

        instructions = []
        if self._compute_unit_price is not None:
            instructions.append(loader.set_compute_unit_price(self._compute_unit_price))
        instructions.extend(
            loader.create_buffer(
                self._fee_payer.address(), account.address, authority, rent, capacity
            )
        )

        try:
            await self._submitter.submit_one(instructions, [keypair])
        except SubmissionError as e:
            if "insufficient" in e.detail.lower():
                raise FundingError(rent, balance) from e
            e.phase = Phase.STAGE_CREATE
            raise

        account.advance(StagingState.FUNDED)
        logging.info(f"Created buffer {account.address} for {capacity} bytes")
        return account

    async def verify_writable(
        self,
        address: AccountAddress,
        expected_authority: AccountAddress,
        phase: Optional[Phase] = None,
    ) -> int:
        """Re-read a buffer and return its capacity.

        Raises:
            StagingStateError: If the buffer is missing, not a loader buffer,
                immutable, or controlled by another authority.
            SubmissionError: If the buffer could not be read.
        """
        try:
            return await self._buffer_capacity(address, expected_authority)
        except (StagingStateError, SubmissionError) as e:
            e.phase = phase
            raise

    async def _buffer_capacity(
        self, address: AccountAddress, expected_authority: AccountAddress
    ) -> int:
        try:
            info = await self._client.account_info(address)
        except AccountNotFound as e:
            raise StagingStateError(address, "account does not exist") from e
        except TRANSPORT_ERRORS as e:
            raise classify_error(e) from e

        if info.owner != LOADER_PROGRAM:
            raise StagingStateError(address, f"account is owned by {info.owner}")

        try:
            state = loader.LoaderState.from_account_data(info.data)
        except Exception as e:
            raise StagingStateError(address, f"unreadable account state: {e}") from e

        if not isinstance(state.value, loader.Buffer):
            raise StagingStateError(address, f"account holds {state}")
        if state.value.authority is None:
            raise StagingStateError(address, "buffer is immutable")
        if state.value.authority != expected_authority:
            raise StagingStateError(
                address,
                f"authority is {state.value.authority}, expected {expected_authority}",
            )
        return len(info.data) - loader.BUFFER_METADATA_SIZE


class Test(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.ledger = InMemoryLedger()
        self.fee_payer = Keypair.generate()
        self.authority = Keypair.generate()
        self.ledger.airdrop(self.fee_payer.address(), 10_000_000_000)
        self.lifecycle = StagingLifecycle(
            self.ledger,
            self.fee_payer,
            BatchSubmitter(self.ledger, self.fee_payer),
        )

    async def test_create_and_verify(self):
        account = await self.lifecycle.create(4096, self.authority.address())
        self.assertEqual(account.state, StagingState.FUNDED)

        capacity = await self.lifecycle.verify_writable(
            account.address, self.authority.address()
        )
        self.assertEqual(capacity, 4096)

        info = await self.ledger.account_info(account.address)
        self.assertEqual(
            info.lamports,
            await self.ledger.minimum_balance_for_rent_exemption(
                loader.size_of_buffer(4096)
            ),
        )

    async def test_funding_error(self):
        poor = Keypair.generate()
        self.ledger.airdrop(poor.address(), 1_000)
        lifecycle = StagingLifecycle(
            self.ledger, poor, BatchSubmitter(self.ledger, poor)
        )
        with self.assertRaises(FundingError) as cm:
            await lifecycle.create(4096, self.authority.address())
        self.assertEqual(cm.exception.phase, Phase.STAGE_CREATE)
        self.assertEqual(self.ledger.sent, [])

    async def test_capacity_limit(self):
        with self.assertRaises(DeployError) as cm:
            await self.lifecycle.create(
                loader.MAX_PERMITTED_DATA_LENGTH, self.authority.address()
            )
        self.assertFalse(cm.exception.retryable)
        self.assertEqual(self.ledger.calls["send_transaction"], 0)

    async def test_verify_writable_failures(self):
        missing = AccountAddress(b"\x0d" * 32)
        with self.assertRaises(StagingStateError):
            await self.lifecycle.verify_writable(missing, self.authority.address())

        account = await self.lifecycle.create(128, self.authority.address())
        with self.assertRaises(StagingStateError) as cm:
            await self.lifecycle.verify_writable(
                account.address, self.fee_payer.address()
            )
        self.assertIn("expected", cm.exception.reason)

        # An ordinary funded account is not a buffer
        with self.assertRaises(StagingStateError):
            await self.lifecycle.verify_writable(
                self.fee_payer.address(), self.authority.address()
            )

    async def test_read_errors_carry_a_phase(self):
        account = await self.lifecycle.create(128, self.authority.address())
        reset = httpx.ConnectError("connection reset")

        with unittest.mock.patch.object(
            self.ledger, "account_info", side_effect=reset
        ):
            with self.assertRaises(SubmissionError) as cm:
                await self.lifecycle.verify_writable(
                    account.address, self.authority.address(), Phase.STAGE_WRITE
                )
        self.assertEqual(cm.exception.kind, SubmissionError.REJECTED)
        self.assertEqual(cm.exception.phase, Phase.STAGE_WRITE)
        self.assertTrue(cm.exception.retryable)

        with unittest.mock.patch.object(
            self.ledger, "account_balance", side_effect=reset
        ):
            with self.assertRaises(SubmissionError) as cm:
                await self.lifecycle.create(128, self.authority.address())
        self.assertEqual(cm.exception.phase, Phase.STAGE_CREATE)

    def test_states_only_advance(self):
        account = StagingAccount(AccountAddress(b"\x0e" * 32), 10, SYSTEM_PROGRAM)
        account.advance(StagingState.FUNDED)
        account.advance(StagingState.WRITING)
        with self.assertRaises(StagingStateError):
            account.advance(StagingState.FUNDED)
