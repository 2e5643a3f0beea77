# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Concurrent submission and confirmation of independent transactions.

:class:`BatchSubmitter` drains a queue of :class:`WriteRequest` objects with a
fixed number of asyncio workers. All workers share one ledger client (and so
one connection pool) and one :class:`ValidityWindow`.

For every request a worker signs against the current validity window, sends,
and waits for confirmation. When a transaction expires, is rejected or times
out, the worker first asks the ledger whether any earlier signature of the
same request landed after all. If none did, it drops the stale window, signs
again against a fresh one and resubmits, until the request's resign budget
runs out. Writes are keyed by absolute offset, so a late landing of an
earlier signature is harmless.

:meth:`BatchSubmitter.submit` only returns once every worker is done. Any
request that exhausted its budget is reported through a single
:class:`~program_deploy.errors.PartialWriteFailure` naming every failed
chunk.
"""

from __future__ import annotations

import asyncio
import logging
import typing
import unittest
import unittest.mock
from dataclasses import dataclass
from typing import List, Optional

import httpx

from . import loader
from .address import AccountAddress
from .async_client import (
    TRANSPORT_ERRORS,
    ApiError,
    BlockhashInfo,
    LedgerClient,
    RpcClient,
    SignatureStatus,
)
from .chunk_planner import Chunk
from .errors import ChunkFailure, PartialWriteFailure, Phase, SubmissionError
from .keypair import Keypair
from .transactions import Instruction, Message, Transaction
from .validity_window import ValidityWindow, ValidityWindowConfig


@dataclass
class RetryBudget:
    """Retry limits for one orchestration run.

    Attributes:
        max_resigns: Times a single request may be re-signed against a fresh
            validity window before it is reported as failed.
        max_attempts: Outer attempts the orchestrator makes, each with a
            brand new staging account.
    """

    max_resigns: int = 5
    max_attempts: int = 3


@dataclass
class SubmitterConfig:
    """Attributes:
    concurrency: Number of concurrent workers.
    confirm_timeout: Seconds to wait for each confirmation.
    """

    concurrency: int = 16
    confirm_timeout: float = 60.0


class WriteRequest:
    """One transaction's worth of work and its signing history."""

    instructions: List[Instruction]
    chunk: Optional[Chunk]
    transaction: Optional[Transaction]
    last_valid_block_height: int
    resigns: int
    signatures: List[str]

    def __init__(self, instructions: List[Instruction], chunk: Optional[Chunk] = None):
        self.instructions = instructions
        self.chunk = chunk
        self.transaction = None
        self.last_valid_block_height = 0
        self.resigns = 0
        self.signatures = []

    def __repr__(self) -> str:
        return f"WriteRequest({self.chunk}, resigns={self.resigns})"

    def signature(self) -> Optional[str]:
        return self.signatures[-1] if self.signatures else None


class SubmissionOutcome:
    """Either ``Confirmed(signature)`` or ``Failed(error)`` for a request."""

    request: WriteRequest
    signature: Optional[str]
    error: Optional[Exception]

    def __init__(
        self,
        request: WriteRequest,
        signature: Optional[str] = None,
        error: Optional[Exception] = None,
    ):
        self.request = request
        self.signature = signature
        self.error = error

    def __repr__(self) -> str:
        if self.error is None:
            return f"Confirmed({self.signature})"
        return f"Failed({self.error})"

    @staticmethod
    def confirmed(request: WriteRequest, signature: str) -> SubmissionOutcome:
        return SubmissionOutcome(request, signature=signature)

    @staticmethod
    def failed(request: WriteRequest, error: Exception) -> SubmissionOutcome:
        return SubmissionOutcome(request, error=error)

    def is_confirmed(self) -> bool:
        return self.error is None


class BatchResult:
    outcomes: List[SubmissionOutcome]

    def __init__(self, outcomes: List[SubmissionOutcome]):
        self.outcomes = outcomes

    @property
    def resigns(self) -> int:
        return sum(outcome.request.resigns for outcome in self.outcomes)

    def confirmed(self) -> List[SubmissionOutcome]:
        return [outcome for outcome in self.outcomes if outcome.is_confirmed()]

    def failed(self) -> List[SubmissionOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.is_confirmed()]


# Rejections that signing again cannot fix
PERMANENT_REJECTIONS = (
    "already in use",
    "already initialized",
    "signature verification",
    "missing required signature",
    "did not sign",
    "insufficient funds",
    "incorrect authority",
    "is immutable",
)


def classify_error(
    error: Exception, signature: Optional[str] = None, phase: Optional[Phase] = None
) -> SubmissionError:
    """Map a ledger client error to a SubmissionError.

    Rejections listed in ``PERMANENT_REJECTIONS`` are marked not retryable.
    """
    if isinstance(error, SubmissionError):
        result = error
    else:
        message = str(error) or type(error).__name__
        if "Blockhash not found" in message or "BlockhashNotFound" in message:
            kind = SubmissionError.EXPIRED
        elif isinstance(error, httpx.TimeoutException):
            kind = SubmissionError.TIMEOUT
        else:
            kind = SubmissionError.REJECTED
        result = SubmissionError(kind, message, signature)

    detail = result.detail.lower()
    if result.kind == SubmissionError.REJECTED and any(
        rejection in detail for rejection in PERMANENT_REJECTIONS
    ):
        result.retryable = False
    if phase is not None:
        result.phase = phase
    return result


class BatchSubmitter:
    """Submits independent transactions concurrently with bounded re-signing."""

    _client: LedgerClient
    _fee_payer: Keypair
    _config: SubmitterConfig
    _budget: RetryBudget
    _window: ValidityWindow

    def __init__(
        self,
        client: LedgerClient,
        fee_payer: Keypair,
        config: SubmitterConfig = SubmitterConfig(),
        budget: RetryBudget = RetryBudget(),
        window: Optional[ValidityWindow] = None,
    ):
        self._client = client
        self._fee_payer = fee_payer
        self._config = config
        self._budget = budget
        self._window = window if window is not None else ValidityWindow(client)

    def address(self) -> AccountAddress:
        return self._fee_payer.address()

    async def submit(
        self, requests: List[WriteRequest], signers: typing.Sequence[Keypair]
    ) -> BatchResult:
        """Submit every request and wait for all of them to settle.

        Raises:
            PartialWriteFailure: If any request exhausted its resign budget.
        """
        queue: asyncio.Queue = asyncio.Queue()
        for index, request in enumerate(requests):
            queue.put_nowait((index, request))

        outcomes: List[Optional[SubmissionOutcome]] = [None] * len(requests)
        workers = [
            asyncio.create_task(self._worker(queue, signers, outcomes))
            for _ in range(max(1, min(self._config.concurrency, len(requests))))
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                worker.cancel()

        result = BatchResult(typing.cast(List[SubmissionOutcome], outcomes))
        failed = result.failed()
        if failed:
            failures = []
            for outcome in failed:
                chunk = outcome.request.chunk
                assert outcome.error is not None
                failures.append(
                    ChunkFailure(
                        chunk.offset if chunk else 0,
                        len(chunk) if chunk else 0,
                        outcome.error,
                    )
                )
            error = PartialWriteFailure(failures, len(requests))
            error.resigns = result.resigns
            raise error
        return result

    async def submit_one(
        self, instructions: List[Instruction], signers: typing.Sequence[Keypair]
    ) -> str:
        """Submit a single transaction with the same resign loop.

        Raises:
            SubmissionError: The last failure once the resign budget is spent.
        """
        outcome = await self._process(WriteRequest(instructions), signers)
        if outcome.error is not None:
            raise outcome.error
        assert outcome.signature is not None
        return outcome.signature

    async def _worker(
        self,
        queue: asyncio.Queue,
        signers: typing.Sequence[Keypair],
        outcomes: List[Optional[SubmissionOutcome]],
    ):
        while True:
            try:
                index, request = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            outcomes[index] = await self._process(request, signers)

    async def _process(
        self, request: WriteRequest, signers: typing.Sequence[Keypair]
    ) -> SubmissionOutcome:
        window: Optional[BlockhashInfo] = None
        stale: Optional[BlockhashInfo] = None
        expired = False
        while True:
            signature = request.signature()
            try:
                if stale is not None:
                    await self._window.invalidate(stale)
                if stale is not None and expired:
                    window = await self._window.fresh(stale)
                else:
                    window = await self._window.current()
                signature = self._sign(request, window, signers)

                await self._client.send_transaction(request.transaction)
                await self._client.confirm_transaction(
                    signature,
                    window.last_valid_block_height,
                    self._config.confirm_timeout,
                )
                return SubmissionOutcome.confirmed(request, signature)
            except (SubmissionError,) + TRANSPORT_ERRORS as e:
                error = classify_error(e, signature)

            landed = await self._landed(request)
            if landed is not None:
                return SubmissionOutcome.confirmed(request, landed)

            if not error.retryable or request.resigns >= self._budget.max_resigns:
                logging.warning(f"Giving up on {request}: {error}")
                return SubmissionOutcome.failed(request, error)

            request.resigns += 1
            logging.info(f"Re-signing {request} after {error.kind}: {error.detail}")
            stale = window
            expired = error.kind == SubmissionError.EXPIRED

    def _sign(
        self,
        request: WriteRequest,
        window: BlockhashInfo,
        signers: typing.Sequence[Keypair],
    ) -> str:
        message = Message.compile(
            request.instructions, self._fee_payer.address(), window.blockhash
        )
        request.transaction = Transaction.new(message, [self._fee_payer, *signers])
        request.last_valid_block_height = window.last_valid_block_height
        signature = str(request.transaction.signature())
        request.signatures.append(signature)
        return signature

    async def _landed(self, request: WriteRequest) -> Optional[str]:
        """The first earlier signature of ``request`` that landed successfully."""
        for signature in request.signatures:
            try:
                status = await self._client.signature_status(signature)
            except TRANSPORT_ERRORS as e:
                logging.warning(f"Unable to check status of {signature}: {e}")
                continue
            if status is not None and status.err is None and status.is_confirmed():
                return signature
        return None


class Test(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.fee_payer = Keypair.generate()
        self.authority = Keypair.generate()
        self.buffer = AccountAddress(b"\x0c" * 32)
        self.heights = iter(range(1, 1_000_000))
        self.patchers = []

    def tearDown(self):
        for patcher in self.patchers:
            patcher.stop()

    def patch(self, method: str, **kwargs):
        patcher = unittest.mock.patch(
            f"program_deploy.async_client.RpcClient.{method}", **kwargs
        )
        self.patchers.append(patcher)
        return patcher.start()

    def fresh_blockhash(self) -> BlockhashInfo:
        return BlockhashInfo(next(self.heights).to_bytes(32, "little"), 1_000)

    def requests(self, count: int) -> List[WriteRequest]:
        requests = []
        for idx in range(count):
            chunk = Chunk(idx * 10, bytes([idx]) * 10)
            instruction = loader.write(
                self.buffer, self.authority.address(), chunk.offset, chunk.data
            )
            requests.append(WriteRequest([instruction], chunk))
        return requests

    def submitter(self, client: RpcClient, budget: RetryBudget) -> BatchSubmitter:
        config = ValidityWindowConfig()
        config.sleep_time = 0
        return BatchSubmitter(
            client,
            self.fee_payer,
            SubmitterConfig(concurrency=4, confirm_timeout=1),
            budget,
            ValidityWindow(client, config),
        )

    async def test_common_path(self):
        self.patch("latest_blockhash", side_effect=self.fresh_blockhash)
        send = self.patch("send_transaction", return_value="0xff")
        self.patch(
            "signature_status",
            return_value=SignatureStatus(slot=1, confirmation_status="confirmed"),
        )

        client = RpcClient("http://127.0.0.1:8899")
        result = await self.submitter(client, RetryBudget()).submit(
            self.requests(10), [self.authority]
        )
        await client.close()

        self.assertEqual(len(result.confirmed()), 10)
        self.assertEqual(result.resigns, 0)
        self.assertEqual(send.await_count, 10)
        for outcome in result.outcomes:
            txn = outcome.request.transaction
            self.assertTrue(txn.verify())
            self.assertEqual(outcome.signature, str(txn.signature()))

    async def test_resign_after_expiry(self):
        self.patch("latest_blockhash", side_effect=self.fresh_blockhash)
        self.patch(
            "send_transaction",
            side_effect=[ApiError("Blockhash not found", -32002), "0xff"],
        )
        self.patch(
            "signature_status",
            side_effect=[
                None,
                SignatureStatus(slot=1, confirmation_status="confirmed"),
            ],
        )

        client = RpcClient("http://127.0.0.1:8899")
        result = await self.submitter(client, RetryBudget()).submit(
            self.requests(1), [self.authority]
        )
        await client.close()

        outcome = result.outcomes[0]
        self.assertTrue(outcome.is_confirmed())
        self.assertEqual(result.resigns, 1)
        self.assertEqual(len(outcome.request.signatures), 2)
        self.assertEqual(outcome.signature, outcome.request.signatures[1])

    async def test_earlier_signature_landed(self):
        self.patch("latest_blockhash", side_effect=self.fresh_blockhash)
        self.patch("send_transaction", return_value="0xff")
        self.patch("block_height", return_value=2_000)
        self.patch(
            "signature_status",
            side_effect=[
                # confirm_transaction: nothing yet, then the window has passed
                None,
                None,
                # the landing check finds it after all
                SignatureStatus(slot=9, confirmation_status="finalized"),
            ],
        )

        client = RpcClient("http://127.0.0.1:8899")
        result = await self.submitter(client, RetryBudget()).submit(
            self.requests(1), [self.authority]
        )
        await client.close()

        self.assertEqual(result.resigns, 0)
        self.assertTrue(result.outcomes[0].is_confirmed())

    async def test_partial_write_failure(self):
        self.patch("latest_blockhash", side_effect=self.fresh_blockhash)
        self.patch(
            "send_transaction",
            side_effect=ApiError("Transaction simulation failed", -32002),
        )
        self.patch("signature_status", return_value=None)

        client = RpcClient("http://127.0.0.1:8899")
        requests = self.requests(2)
        with self.assertRaises(PartialWriteFailure) as cm:
            await self.submitter(client, RetryBudget(max_resigns=2)).submit(
                requests, [self.authority]
            )
        await client.close()

        failures = cm.exception.failures
        self.assertEqual(
            sorted((f.offset, f.length) for f in failures), [(0, 10), (10, 10)]
        )
        for failure in failures:
            self.assertIsInstance(failure.cause, SubmissionError)
            self.assertEqual(failure.cause.kind, SubmissionError.REJECTED)
        self.assertEqual([len(r.signatures) for r in requests], [3, 3])

    async def test_submit_one_raises_last_error(self):
        self.patch("latest_blockhash", side_effect=self.fresh_blockhash)
        self.patch(
            "send_transaction",
            side_effect=ApiError("Blockhash not found", -32002),
        )
        self.patch("signature_status", return_value=None)

        client = RpcClient("http://127.0.0.1:8899")
        with self.assertRaises(SubmissionError) as cm:
            await self.submitter(client, RetryBudget(max_resigns=0)).submit_one(
                self.requests(1)[0].instructions, [self.authority]
            )
        await client.close()
        self.assertEqual(cm.exception.kind, SubmissionError.EXPIRED)

    async def test_transport_error_is_resigned(self):
        unavailable = [ApiError("503 Service Unavailable", 503)]

        def latest_blockhash():
            if unavailable:
                raise unavailable.pop()
            return self.fresh_blockhash()

        self.patch("latest_blockhash", side_effect=latest_blockhash)
        self.patch(
            "send_transaction",
            side_effect=[httpx.ConnectError("connection reset"), "0xff"],
        )
        self.patch(
            "signature_status",
            side_effect=[
                None,
                SignatureStatus(slot=1, confirmation_status="confirmed"),
            ],
        )

        client = RpcClient("http://127.0.0.1:8899")
        result = await self.submitter(client, RetryBudget()).submit(
            self.requests(1), [self.authority]
        )
        await client.close()

        outcome = result.outcomes[0]
        self.assertTrue(outcome.is_confirmed())
        self.assertEqual(result.resigns, 2)
        self.assertEqual(len(outcome.request.signatures), 2)

    async def test_status_check_error_is_not_fatal(self):
        self.patch("latest_blockhash", side_effect=self.fresh_blockhash)
        self.patch(
            "send_transaction",
            side_effect=[ApiError("Blockhash not found", -32002), "0xff"],
        )
        self.patch(
            "signature_status",
            side_effect=[
                httpx.ConnectError("connection reset"),
                SignatureStatus(slot=1, confirmation_status="confirmed"),
            ],
        )

        client = RpcClient("http://127.0.0.1:8899")
        result = await self.submitter(client, RetryBudget()).submit(
            self.requests(1), [self.authority]
        )
        await client.close()

        self.assertTrue(result.outcomes[0].is_confirmed())
        self.assertEqual(result.resigns, 1)

    async def test_permanent_rejection_is_not_resigned(self):
        self.patch("latest_blockhash", side_effect=self.fresh_blockhash)
        send = self.patch(
            "send_transaction",
            side_effect=ApiError(
                "Transaction simulation failed: account already in use", -32002
            ),
        )
        self.patch("signature_status", return_value=None)

        client = RpcClient("http://127.0.0.1:8899")
        requests = self.requests(1)
        with self.assertRaises(PartialWriteFailure) as cm:
            await self.submitter(client, RetryBudget()).submit(
                requests, [self.authority]
            )
        await client.close()

        self.assertEqual(send.await_count, 1)
        self.assertEqual(len(requests[0].signatures), 1)
        self.assertEqual(cm.exception.resigns, 0)
        self.assertFalse(cm.exception.retryable)
        self.assertFalse(cm.exception.failures[0].cause.retryable)

    def test_classify_error(self):
        error = classify_error(httpx.ReadTimeout("timed out"), "sig", Phase.VERIFY)
        self.assertEqual(error.kind, SubmissionError.TIMEOUT)
        self.assertEqual(error.signature, "sig")
        self.assertEqual(error.phase, Phase.VERIFY)
        self.assertTrue(error.retryable)

        error = classify_error(ApiError("Blockhash not found", -32002))
        self.assertEqual(error.kind, SubmissionError.EXPIRED)
        self.assertTrue(error.retryable)

        error = classify_error(
            ApiError("Transaction did not pass signature verification", -32003)
        )
        self.assertEqual(error.kind, SubmissionError.REJECTED)
        self.assertFalse(error.retryable)

        error = classify_error(ApiError("Transaction simulation failed", -32002))
        self.assertTrue(error.retryable)
