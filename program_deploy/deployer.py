# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Program deployment and upgrade orchestration.

A program payload is usually far larger than a single transaction, so it is
first written into a staging buffer in chunks and then activated in one
final transaction. Each outer attempt walks the same phases:

    VERIFY -> STAGE_CREATE -> STAGE_WRITE -> FINALIZE

VERIFY checks that the caller can change the program before any lamports are
spent on a buffer; a failure there ends the run. Transient failures in the
later phases (a transaction that never landed, chunks that exhausted their
resigns, a buffer that changed before finalize) start a new attempt with a
brand new buffer, until :attr:`RetryBudget.max_attempts` is used up.

Examples:
    Deploying a new program::

        from program_deploy.async_client import RpcClient
        from program_deploy.deployer import DeploymentTarget, ProgramDeployer
        from program_deploy.keypair import Keypair

        client = RpcClient("http://127.0.0.1:8899")
        payer = Keypair.load("payer.json")
        program = Keypair.load("program-keypair.json")

        deployer = ProgramDeployer(client, payer)
        with open("program.so", "rb") as f:
            payload = f.read()
        result = await deployer.deploy(
            DeploymentTarget.new(program, payer), payload, max_len=2 * len(payload)
        )
        print(f"Deployed {result.program_id} in {result.signature}")

    Upgrading it later and removing the upgrade authority::

        result = await deployer.upgrade(
            DeploymentTarget(program.address(), payer), payload, make_final=True
        )
"""

from __future__ import annotations

import logging
import unittest
import unittest.mock
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import httpx

from . import loader
from .address import LOADER_PROGRAM, AccountAddress
from .async_client import TRANSPORT_ERRORS, LedgerClient
from .chunk_planner import ChunkPlanner
from .errors import (
    AuthorityError,
    DeployError,
    FinalizeConflict,
    FundingError,
    PartialWriteFailure,
    Phase,
    StagingStateError,
    SubmissionError,
)
from .keypair import Keypair
from .memory_ledger import (
    LAMPORTS_PER_SOL,
    Fault,
    InMemoryLedger,
    has_variant,
    loader_instructions,
    write_at,
)
from .staging import StagingAccount, StagingLifecycle, StagingState
from .transaction_worker import (
    BatchResult,
    BatchSubmitter,
    RetryBudget,
    SubmitterConfig,
    WriteRequest,
    classify_error,
)
from .transactions import PACKET_DATA_SIZE, Instruction
from .validity_window import ValidityWindow
from .verifier import StateVerifier


@dataclass(frozen=True)
class DeploymentTarget:
    """The program to deploy or upgrade and the keys that control it.

    Attributes:
        program_id: The program address.
        authority: The upgrade authority signer.
        program_keypair: The program's own keypair, only needed to deploy it
            for the first time.
    """

    program_id: AccountAddress
    authority: Keypair
    program_keypair: Optional[Keypair] = None

    def __post_init__(self):
        if (
            self.program_keypair is not None
            and self.program_keypair.address() != self.program_id
        ):
            raise ValueError(
                f"Program keypair {self.program_keypair.address()} does not match "
                f"program id {self.program_id}"
            )

    @staticmethod
    def new(program_keypair: Keypair, authority: Keypair) -> DeploymentTarget:
        return DeploymentTarget(program_keypair.address(), authority, program_keypair)


class NewDeployment:
    """The program does not exist yet and is created by finalize."""

    program_keypair: Keypair

    def __init__(self, program_keypair: Keypair):
        self.program_keypair = program_keypair

    def __str__(self) -> str:
        return "new-deployment"


class Upgrade:
    """The program exists and finalize swaps in the new payload."""

    current_authority: AccountAddress

    def __init__(self, current_authority: AccountAddress):
        self.current_authority = current_authority

    def __str__(self) -> str:
        return "upgrade"


DeployMode = Union[NewDeployment, Upgrade]


@dataclass
class DeploymentResult:
    program_id: AccountAddress
    mode: DeployMode
    signature: str
    staging_address: AccountAddress
    chunks_written: int
    resigns: int
    outer_retries: int
    final_authority: Optional[AccountAddress]
    immutability_error: Optional[Exception] = None


class ProgramDeployer:
    """Deploys and upgrades programs through a staging buffer.

    One deployer owns one :class:`BatchSubmitter` and so one validity window
    shared by every transaction it sends.
    """

    _client: LedgerClient
    _fee_payer: Keypair
    _budget: RetryBudget
    _priority_fee: Optional[int]
    _packet_size: int
    _submitter: BatchSubmitter
    _staging: StagingLifecycle
    _verifier: StateVerifier

    def __init__(
        self,
        client: LedgerClient,
        fee_payer: Keypair,
        budget: RetryBudget = RetryBudget(),
        submitter_config: SubmitterConfig = SubmitterConfig(),
        priority_fee: Optional[int] = None,
        packet_size: int = PACKET_DATA_SIZE,
    ):
        self._client = client
        self._fee_payer = fee_payer
        self._budget = budget
        self._priority_fee = priority_fee
        self._packet_size = packet_size
        self._submitter = BatchSubmitter(
            client, fee_payer, submitter_config, budget, ValidityWindow(client)
        )
        self._staging = StagingLifecycle(client, fee_payer, self._submitter, priority_fee)
        self._verifier = StateVerifier(client)

    async def deploy(
        self,
        target: DeploymentTarget,
        payload: bytes,
        max_len: Optional[int] = None,
        buffer: Optional[AccountAddress] = None,
        make_final: bool = False,
    ) -> DeploymentResult:
        """Deploy ``payload`` as a new program, or upgrade it if it exists.

        Any account already at ``target.program_id`` is treated as the program
        to upgrade, so an account that is not a mutable program fails
        verification before anything is written.

        ``max_len`` reserves room for future, larger upgrades of a new
        program. With ``buffer`` an already written buffer is deployed
        instead of staging ``payload`` again.

        Raises:
            AuthorityError: If the program cannot be changed by
                ``target.authority``, or there is no program and no program
                keypair to create it with.
            DeployError: The last error once every attempt failed.
        """
        if await self._verifier.account_exists(target.program_id):
            mode: DeployMode = Upgrade(target.authority.address())
        elif target.program_keypair is None:
            raise AuthorityError(
                AuthorityError.NOT_FOUND,
                target.program_id,
                detail="a program keypair is required to deploy a new program",
            )
        else:
            mode = NewDeployment(target.program_keypair)
        return await self._run(target, mode, payload, max_len, buffer, make_final)

    async def upgrade(
        self,
        target: DeploymentTarget,
        payload: bytes,
        buffer: Optional[AccountAddress] = None,
        make_final: bool = False,
    ) -> DeploymentResult:
        """Replace the payload of an existing program.

        Raises:
            AuthorityError: If there is no program at ``target.program_id`` or
                ``target.authority`` cannot upgrade it.
        """
        mode = Upgrade(target.authority.address())
        return await self._run(target, mode, payload, None, buffer, make_final)

    async def write_buffer(
        self, payload: bytes, authority: Keypair, max_len: Optional[int] = None
    ) -> StagingAccount:
        """Stage ``payload`` into a new buffer without deploying it."""
        staging, _ = await self._stage(payload, authority, max_len)
        return staging

    async def _run(
        self,
        target: DeploymentTarget,
        mode: DeployMode,
        payload: bytes,
        max_len: Optional[int],
        buffer: Optional[AccountAddress],
        make_final: bool,
    ) -> DeploymentResult:
        if buffer is not None:
            result = await self._deploy_buffer(target, mode, buffer, max_len)
        else:
            result = await self._with_retries(target, mode, payload, max_len)

        if make_final:
            await self._make_final(target, result)
        return result

    async def _with_retries(
        self,
        target: DeploymentTarget,
        mode: DeployMode,
        payload: bytes,
        max_len: Optional[int],
    ) -> DeploymentResult:
        if isinstance(mode, Upgrade):
            max_len = None
        resigns = 0
        for attempt in range(1, self._budget.max_attempts + 1):
            try:
                await self._verify(target, mode, len(payload))
                staging, written = await self._stage(payload, target.authority, max_len)
                signature = await self._finalize(target, mode, staging)
            except DeployError as e:
                resigns += getattr(e, "resigns", 0)
                if not e.retryable or attempt >= self._budget.max_attempts:
                    e.attempts = attempt
                    raise
                logging.warning(
                    f"Attempt {attempt} of {self._budget.max_attempts} for "
                    f"{target.program_id} failed, retrying with a new buffer: {e}"
                )
                continue

            logging.info(
                f"Finalized {mode} of {target.program_id} from {staging.address} "
                f"in {signature}"
            )
            return DeploymentResult(
                program_id=target.program_id,
                mode=mode,
                signature=signature,
                staging_address=staging.address,
                chunks_written=len(written.outcomes),
                resigns=resigns + written.resigns,
                outer_retries=attempt - 1,
                final_authority=target.authority.address(),
            )
        raise AssertionError("max_attempts must be at least 1")

    async def _deploy_buffer(
        self,
        target: DeploymentTarget,
        mode: DeployMode,
        buffer: AccountAddress,
        max_len: Optional[int],
    ) -> DeploymentResult:
        capacity = await self._staging.verify_writable(
            buffer, target.authority.address(), Phase.VERIFY
        )
        await self._verify(target, mode, capacity)
        staging = StagingAccount(
            buffer, capacity, target.authority.address(), StagingState.COMPLETE
        )
        try:
            signature = await self._finalize(target, mode, staging, max_len)
        except DeployError as e:
            e.attempts = 1
            raise
        return DeploymentResult(
            program_id=target.program_id,
            mode=mode,
            signature=signature,
            staging_address=buffer,
            chunks_written=0,
            resigns=0,
            outer_retries=0,
            final_authority=target.authority.address(),
        )

    async def _verify(self, target: DeploymentTarget, mode: DeployMode, length: int):
        if isinstance(mode, NewDeployment):
            return
        mode.current_authority = await self._verifier.check_mutable(
            target.program_id, target.authority.address()
        )
        capacity = await self._verifier.program_capacity(target.program_id)
        if capacity < length:
            raise DeployError(
                f"Program {target.program_id} holds {capacity} bytes but the payload "
                f"is {length} bytes, extend it first",
                Phase.VERIFY,
            )

    async def _stage(
        self, payload: bytes, authority: Keypair, max_len: Optional[int]
    ) -> Tuple[StagingAccount, BatchResult]:
        keypair = Keypair.generate()
        planner = ChunkPlanner(
            self._fee_payer.address(),
            keypair.address(),
            authority.address(),
            self._priority_fee,
            self._packet_size,
        )
        chunks = planner.plan(payload)

        staging = await self._staging.create(
            max(len(payload), max_len or 0), authority.address(), keypair
        )
        await self._staging.verify_writable(
            staging.address, authority.address(), Phase.STAGE_WRITE
        )
        staging.advance(StagingState.WRITING)

        requests = [WriteRequest(planner.instructions(chunk), chunk) for chunk in chunks]
        logging.info(
            f"Writing {len(payload)} bytes to {staging.address} in {len(chunks)} chunks "
            f"of up to {planner.chunk_size()} bytes"
        )
        result = await self._submitter.submit(requests, [authority])
        staging.advance(StagingState.COMPLETE)
        return staging, result

    async def _finalize(
        self,
        target: DeploymentTarget,
        mode: DeployMode,
        staging: StagingAccount,
        max_len: Optional[int] = None,
    ) -> str:
        authority = target.authority
        try:
            await self._staging.verify_writable(
                staging.address, authority.address(), Phase.FINALIZE
            )
        except StagingStateError as e:
            raise FinalizeConflict(staging.address, e.reason) from e

        instructions: List[Instruction] = []
        if self._priority_fee is not None:
            instructions.append(loader.set_compute_unit_price(self._priority_fee))

        if isinstance(mode, NewDeployment):
            try:
                program_lamports = await self._client.minimum_balance_for_rent_exemption(
                    loader.PROGRAM_SIZE
                )
            except TRANSPORT_ERRORS as e:
                raise classify_error(e, phase=Phase.FINALIZE) from e
            instructions.extend(
                loader.deploy_with_max_program_len(
                    self._fee_payer.address(),
                    target.program_id,
                    staging.address,
                    authority.address(),
                    program_lamports,
                    max(staging.capacity, max_len or 0),
                )
            )
            signers = [mode.program_keypair, authority]
        else:
            instructions.append(
                loader.upgrade(
                    target.program_id,
                    staging.address,
                    authority.address(),
                    self._fee_payer.address(),
                )
            )
            signers = [authority]

        try:
            signature = await self._submitter.submit_one(instructions, signers)
        except SubmissionError as e:
            if "insufficient" in e.detail.lower():
                try:
                    balance = await self._client.account_balance(
                        self._fee_payer.address()
                    )
                    required = await self._client.minimum_balance_for_rent_exemption(
                        loader.size_of_programdata(staging.capacity)
                    )
                except TRANSPORT_ERRORS:
                    e.phase = Phase.FINALIZE
                    raise e
                raise FundingError(required, balance, Phase.FINALIZE) from e
            e.phase = Phase.FINALIZE
            raise
        staging.advance(StagingState.CONSUMED)
        return signature

    async def _make_final(self, target: DeploymentTarget, result: DeploymentResult):
        programdata = AccountAddress.for_program_data(target.program_id)
        try:
            await self._submitter.submit_one(
                [loader.set_authority(programdata, target.authority.address(), None)],
                [target.authority],
            )
        except DeployError as e:
            e.phase = Phase.POST_FINALIZE
            logging.error(
                f"Deployed {target.program_id} but could not make it immutable: {e}",
                exc_info=True,
            )
            result.immutability_error = e
            return
        logging.info(f"Removed the upgrade authority of {target.program_id}")
        result.final_authority = None


class Test(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.ledger = InMemoryLedger()
        self.payer = Keypair.generate()
        self.authority = Keypair.generate()
        self.program = Keypair.generate()
        self.ledger.airdrop(self.payer.address(), 100 * LAMPORTS_PER_SOL)

    def buffers(self) -> List[AccountAddress]:
        return [
            instruction.accounts[0].pubkey
            for txn in self.ledger.sent_with(loader.LoaderInstruction.INITIALIZE_BUFFER)
            for instruction in txn.message.decompile()
            if instruction.program_id == LOADER_PROGRAM
        ]

    def install(self, authority: Optional[AccountAddress]):
        self.ledger.install_program(
            self.program.address(), b"\x01" * 5000, authority, max_data_len=10_000
        )

    async def test_fresh_deploy(self):
        payload = bytes(range(250)) * 160
        self.assertEqual(len(payload), 40_000)

        deployer = ProgramDeployer(
            self.ledger, self.payer, packet_size=PACKET_DATA_SIZE - 16
        )
        result = await deployer.deploy(
            DeploymentTarget.new(self.program, self.authority), payload
        )

        self.assertIsInstance(result.mode, NewDeployment)
        self.assertEqual(result.chunks_written, 45)
        self.assertEqual(result.resigns, 0)
        self.assertEqual(result.outer_retries, 0)
        self.assertEqual(result.final_authority, self.authority.address())

        writes = [
            ix
            for txn in self.ledger.sent_with(loader.LoaderInstruction.WRITE)
            for ix in loader_instructions(txn)
        ]
        self.assertEqual(len(writes), 45)
        self.assertEqual(max(len(ix.data) for ix in writes), 900)
        self.assertEqual(sum(len(ix.data) for ix in writes), len(payload))

        deploys = self.ledger.sent_with(loader.LoaderInstruction.DEPLOY_WITH_MAX_DATA_LEN)
        self.assertEqual(len(deploys), 1)
        self.assertEqual(result.signature, str(deploys[0].signature()))
        self.assertEqual(
            set(deploys[0].message.signers()),
            {self.payer.address(), self.program.address(), self.authority.address()},
        )

        self.assertEqual(self.ledger.program_bytes(self.program.address()), payload)
        self.assertNotIn(result.staging_address, self.ledger.accounts)
        verifier = StateVerifier(self.ledger)
        self.assertEqual(
            await verifier.check_mutable(self.program.address(), self.authority.address()),
            self.authority.address(),
        )

    async def test_upgrade_with_transient_expiry(self):
        self.install(self.authority.address())
        payload = b"\x07" * 9000
        deployer = ProgramDeployer(self.ledger, self.payer)
        self.ledger.inject(Fault.DROP, write_at(916 * 4))

        result = await deployer.upgrade(
            DeploymentTarget(self.program.address(), self.authority), payload
        )

        self.assertIsInstance(result.mode, Upgrade)
        self.assertEqual(result.chunks_written, 10)
        self.assertEqual(result.resigns, 1)
        self.assertEqual(result.outer_retries, 0)
        self.assertEqual(len(self.ledger.sent_with(loader.LoaderInstruction.WRITE)), 10)
        self.assertEqual([event for event, _ in self.ledger.log].count("drop"), 1)

        upgrades = self.ledger.sent_with(loader.LoaderInstruction.UPGRADE)
        self.assertEqual(len(upgrades), 1)
        self.assertEqual(
            set(upgrades[0].message.signers()),
            {self.payer.address(), self.authority.address()},
        )
        self.assertEqual(
            self.ledger.program_bytes(self.program.address()), payload + bytes(1000)
        )

    async def test_authority_mismatch_before_staging(self):
        other = Keypair.generate()
        self.install(other.address())
        deployer = ProgramDeployer(self.ledger, self.payer)

        with self.assertRaises(AuthorityError) as cm:
            await deployer.upgrade(
                DeploymentTarget(self.program.address(), self.authority), b"\x02" * 3000
            )
        self.assertEqual(cm.exception.kind, AuthorityError.MISMATCH)
        self.assertEqual(cm.exception.actual, other.address())
        self.assertEqual(cm.exception.phase, Phase.VERIFY)
        self.assertEqual(cm.exception.attempts, 1)
        self.assertEqual(self.ledger.sent, [])
        self.assertEqual(self.ledger.calls["minimum_balance_for_rent_exemption"], 0)
        self.assertEqual(self.ledger.calls["latest_blockhash"], 0)

    async def test_immutable_before_staging(self):
        self.install(None)
        deployer = ProgramDeployer(self.ledger, self.payer)

        with self.assertRaises(AuthorityError) as cm:
            await deployer.deploy(
                DeploymentTarget.new(self.program, self.authority), b"\x02" * 3000
            )
        self.assertEqual(cm.exception.kind, AuthorityError.IMMUTABLE)
        self.assertEqual(self.buffers(), [])
        self.assertEqual(self.ledger.sent, [])

    async def test_missing_program_keypair(self):
        deployer = ProgramDeployer(self.ledger, self.payer)
        with self.assertRaises(AuthorityError) as cm:
            await deployer.deploy(
                DeploymentTarget(self.program.address(), self.authority), b"\x02" * 10
            )
        self.assertEqual(cm.exception.kind, AuthorityError.NOT_FOUND)
        with self.assertRaises(ValueError):
            DeploymentTarget(self.program.address(), self.authority, self.authority)

    async def test_outer_retry_uses_new_buffer(self):
        deployer = ProgramDeployer(
            self.ledger, self.payer, RetryBudget(max_resigns=1, max_attempts=3)
        )
        self.ledger.inject(Fault.REJECT, write_at(0), times=2)
        payload = b"\x05" * 2000

        result = await deployer.deploy(
            DeploymentTarget.new(self.program, self.authority), payload
        )

        buffers = self.buffers()
        self.assertEqual(len(buffers), 2)
        self.assertNotEqual(buffers[0], buffers[1])
        self.assertEqual(result.staging_address, buffers[1])
        self.assertEqual(result.outer_retries, 1)
        self.assertEqual(result.resigns, 1)
        # The first buffer is abandoned, not reused
        self.assertIn(buffers[0], self.ledger.accounts)
        self.assertEqual(self.ledger.program_bytes(self.program.address()), payload)

    async def test_attempts_exhausted(self):
        deployer = ProgramDeployer(
            self.ledger, self.payer, RetryBudget(max_resigns=0, max_attempts=2)
        )
        self.ledger.inject(Fault.REJECT, write_at(916), times=100)

        with self.assertRaises(PartialWriteFailure) as cm:
            await deployer.deploy(
                DeploymentTarget.new(self.program, self.authority), b"\x05" * 2000
            )
        error = cm.exception
        self.assertEqual(error.phase, Phase.STAGE_WRITE)
        self.assertEqual(error.attempts, 2)
        self.assertEqual([(f.offset, f.length) for f in error.failures], [(916, 916)])
        self.assertIn("[916, 1832)", str(error))
        self.assertTrue(str(error).endswith("(after 2 attempts)"))
        self.assertEqual(len(self.buffers()), 2)
        self.assertEqual(
            self.ledger.sent_with(loader.LoaderInstruction.DEPLOY_WITH_MAX_DATA_LEN), []
        )

    async def test_finalize_conflict_is_retried(self):
        conflict = StagingStateError(self.program.address(), "buffer is immutable")
        deployer = ProgramDeployer(self.ledger, self.payer)

        with unittest.mock.patch(
            "program_deploy.staging.StagingLifecycle.verify_writable",
            side_effect=[2000, conflict, 2000, 2000],
        ):
            result = await deployer.deploy(
                DeploymentTarget.new(self.program, self.authority), b"\x06" * 2000
            )

        self.assertEqual(result.outer_retries, 1)
        self.assertEqual(len(self.buffers()), 2)
        self.assertEqual(
            self.ledger.program_bytes(self.program.address()), b"\x06" * 2000
        )

    async def test_finalize_waits_for_every_write(self):
        self.ledger.latency = 2
        self.ledger.inject(Fault.DROP, write_at(0))
        payload = b"\x09" * 5000
        deployer = ProgramDeployer(self.ledger, self.payer)

        result = await deployer.deploy(
            DeploymentTarget.new(self.program, self.authority), payload
        )

        writes = {
            str(txn.signature())
            for txn in self.ledger.sent_with(loader.LoaderInstruction.WRITE)
        }
        landed = [
            index
            for index, (event, signature) in enumerate(self.ledger.log)
            if event == "land" and signature in writes
        ]
        self.assertEqual(len(landed), len(writes))
        self.assertLess(max(landed), self.ledger.log.index(("send", result.signature)))
        self.assertEqual(self.ledger.program_bytes(self.program.address()), payload)

    async def test_funding_error_is_fatal(self):
        poor = Keypair.generate()
        self.ledger.airdrop(poor.address(), 1_000_000)
        deployer = ProgramDeployer(self.ledger, poor)

        with self.assertRaises(FundingError) as cm:
            await deployer.deploy(
                DeploymentTarget.new(self.program, self.authority), b"\x02" * 2000
            )
        self.assertEqual(cm.exception.phase, Phase.STAGE_CREATE)
        self.assertEqual(cm.exception.attempts, 1)
        self.assertEqual(self.ledger.sent, [])

    async def test_write_buffer_then_deploy(self):
        payload = bytes(range(200)) * 15
        deployer = ProgramDeployer(self.ledger, self.payer)
        staging = await deployer.write_buffer(payload, self.authority)
        self.assertEqual(staging.state, StagingState.COMPLETE)

        def staged() -> bytes:
            data = self.ledger.accounts[staging.address].data
            return data[loader.BUFFER_METADATA_SIZE :]

        self.assertEqual(staged(), payload)

        # Writing the same chunk again changes nothing
        await BatchSubmitter(self.ledger, self.payer).submit_one(
            [loader.write(staging.address, self.authority.address(), 916, payload[916:1832])],
            [self.authority],
        )
        self.assertEqual(staged(), payload)

        result = await deployer.deploy(
            DeploymentTarget.new(self.program, self.authority),
            b"",
            max_len=4000,
            buffer=staging.address,
        )
        self.assertEqual(result.chunks_written, 0)
        self.assertEqual(result.staging_address, staging.address)
        self.assertEqual(len(self.buffers()), 1)
        self.assertEqual(
            self.ledger.program_bytes(self.program.address()), payload + bytes(1000)
        )

    async def test_foreign_buffer_rejected(self):
        other = Keypair.generate()
        deployer = ProgramDeployer(self.ledger, self.payer)
        staging = await deployer.write_buffer(b"\x03" * 100, other)

        with self.assertRaises(StagingStateError) as cm:
            await deployer.deploy(
                DeploymentTarget.new(self.program, self.authority),
                b"",
                buffer=staging.address,
            )
        self.assertEqual(cm.exception.phase, Phase.VERIFY)

    async def test_make_final(self):
        deployer = ProgramDeployer(self.ledger, self.payer)
        result = await deployer.deploy(
            DeploymentTarget.new(self.program, self.authority),
            b"\x04" * 1000,
            make_final=True,
        )
        self.assertIsNone(result.final_authority)
        self.assertIsNone(result.immutability_error)

        with self.assertRaises(AuthorityError) as cm:
            await StateVerifier(self.ledger).check_mutable(
                self.program.address(), self.authority.address()
            )
        self.assertEqual(cm.exception.kind, AuthorityError.IMMUTABLE)

    async def test_make_final_failure_is_reported(self):
        deployer = ProgramDeployer(self.ledger, self.payer, RetryBudget(max_resigns=0))
        self.ledger.inject(
            Fault.REJECT, has_variant(loader.LoaderInstruction.SET_AUTHORITY)
        )

        result = await deployer.deploy(
            DeploymentTarget.new(self.program, self.authority),
            b"\x04" * 1000,
            make_final=True,
        )
        self.assertIsInstance(result.immutability_error, SubmissionError)
        self.assertEqual(result.immutability_error.phase, Phase.POST_FINALIZE)
        self.assertEqual(result.final_authority, self.authority.address())
        self.assertEqual(
            self.ledger.program_bytes(self.program.address()), b"\x04" * 1000
        )

    async def test_priority_fee_on_every_transaction(self):
        deployer = ProgramDeployer(self.ledger, self.payer, priority_fee=1_000)
        await deployer.deploy(
            DeploymentTarget.new(self.program, self.authority), b"\x08" * 3000
        )
        self.assertEqual(len(self.ledger.compute_unit_prices), len(self.ledger.sent))
        self.assertEqual(set(self.ledger.compute_unit_prices), {1_000})

    async def test_connection_error_mid_write(self):
        send_transaction = self.ledger.send_transaction
        resets = [httpx.ConnectError("connection reset")]

        async def send(txn):
            if resets and write_at(916)(txn):
                raise resets.pop()
            return await send_transaction(txn)

        self.ledger.send_transaction = send
        payload = b"\x05" * 2000
        deployer = ProgramDeployer(self.ledger, self.payer)

        result = await deployer.deploy(
            DeploymentTarget.new(self.program, self.authority), payload
        )

        self.assertEqual(resets, [])
        self.assertEqual(result.resigns, 1)
        self.assertEqual(result.outer_retries, 0)
        self.assertEqual(len(self.buffers()), 1)
        self.assertEqual(self.ledger.program_bytes(self.program.address()), payload)

    async def test_read_error_during_verify_is_retried(self):
        self.install(self.authority.address())
        account_info = self.ledger.account_info
        timeouts = [httpx.ReadTimeout("timed out")]

        async def read(address):
            if timeouts:
                raise timeouts.pop()
            return await account_info(address)

        self.ledger.account_info = read
        deployer = ProgramDeployer(self.ledger, self.payer)

        result = await deployer.upgrade(
            DeploymentTarget(self.program.address(), self.authority), b"\x02" * 3000
        )
        self.assertEqual(result.outer_retries, 1)
        self.assertEqual(len(self.buffers()), 1)

    async def test_existing_account_is_not_a_new_program(self):
        self.ledger.airdrop(self.program.address(), 1_000_000)
        deployer = ProgramDeployer(self.ledger, self.payer)

        with self.assertRaises(AuthorityError) as cm:
            await deployer.deploy(
                DeploymentTarget.new(self.program, self.authority), b"\x02" * 20_000
            )
        self.assertEqual(cm.exception.kind, AuthorityError.NOT_FOUND)
        self.assertEqual(cm.exception.phase, Phase.VERIFY)
        self.assertEqual(cm.exception.attempts, 1)
        self.assertEqual(self.ledger.sent, [])
        self.assertEqual(self.buffers(), [])
        self.assertEqual(self.ledger.sent_with(loader.LoaderInstruction.WRITE), [])

    async def test_make_final_connection_error_is_reported(self):
        send_transaction = self.ledger.send_transaction
        signature_status = self.ledger.signature_status
        lost = set()

        async def send(txn):
            if has_variant(loader.LoaderInstruction.SET_AUTHORITY)(txn):
                lost.add(str(txn.signature()))
                raise httpx.ConnectError("connection reset")
            return await send_transaction(txn)

        async def status(signature):
            if signature in lost:
                raise httpx.ConnectError("connection reset")
            return await signature_status(signature)

        self.ledger.send_transaction = send
        self.ledger.signature_status = status
        payload = b"\x04" * 1000
        deployer = ProgramDeployer(self.ledger, self.payer, RetryBudget(max_resigns=1))

        result = await deployer.deploy(
            DeploymentTarget.new(self.program, self.authority),
            payload,
            make_final=True,
        )

        self.assertEqual(len(lost), 2)
        self.assertIsInstance(result.immutability_error, SubmissionError)
        self.assertEqual(result.immutability_error.phase, Phase.POST_FINALIZE)
        self.assertEqual(result.final_authority, self.authority.address())
        self.assertEqual(self.ledger.program_bytes(self.program.address()), payload)
