# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Deployment errors.

Every failure surfaced by the deployment pipeline is a :class:`DeployError`
that records the :class:`Phase` it happened in. Each error class declares
whether the orchestrator may retry it with a fresh staging account:

======================  =========  ============================================
Error                   Retryable  Raised when
======================  =========  ============================================
SizingError             no         the transaction envelope leaves no room for data
FundingError            no         the fee payer cannot afford the staging account
AuthorityError          no         the program is missing, immutable, or owned
                                   by another authority
StagingStateError       no         a buffer is missing, closed, or not writable
                                   by the expected authority
SubmissionError         yes        a transaction expired, was rejected, or timed out
PartialWriteFailure     yes        some chunk writes failed after all resigns
FinalizeConflict        yes        the buffer changed under us before finalize
======================  =========  ============================================
"""

from __future__ import annotations

import unittest
from enum import Enum
from typing import List, Optional

from .address import AccountAddress


class Phase(Enum):
    VERIFY = "verify"
    STAGE_CREATE = "stage-create"
    STAGE_WRITE = "stage-write"
    FINALIZE = "finalize"
    POST_FINALIZE = "post-finalize"


class DeployError(Exception):
    """Base class for pipeline failures.

    Attributes:
        phase: The pipeline phase that failed, or None when raised outside
            of an orchestrated run.
        attempts: Outer attempts consumed before the error surfaced. Set by
            the orchestrator.
    """

    retryable: bool = False

    phase: Optional[Phase]
    attempts: int

    def __init__(self, message: str, phase: Optional[Phase] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.attempts = 0

    def __str__(self) -> str:
        prefix = f"[{self.phase.value}] " if self.phase else ""
        suffix = f" (after {self.attempts} attempts)" if self.attempts > 1 else ""
        return f"{prefix}{self.message}{suffix}"


class SizingError(DeployError):
    def __init__(self, envelope_size: int, packet_size: int):
        super().__init__(
            f"Write envelope of {envelope_size} bytes leaves no room for data in a "
            f"{packet_size} byte packet",
            Phase.STAGE_WRITE,
        )
        self.envelope_size = envelope_size
        self.packet_size = packet_size


class FundingError(DeployError):
    def __init__(self, required: int, available: int, phase: Phase = Phase.STAGE_CREATE):
        super().__init__(
            f"Fee payer holds {available} lamports but {required} are required",
            phase,
        )
        self.required = required
        self.available = available


class AuthorityError(DeployError):
    """The target program cannot be changed by the expected authority.

    Attributes:
        kind: One of NOT_FOUND, IMMUTABLE or MISMATCH.
        expected: The authority the caller holds.
        actual: The authority recorded on the ledger, for MISMATCH.
    """

    NOT_FOUND: str = "not-found"
    IMMUTABLE: str = "immutable"
    MISMATCH: str = "mismatch"

    kind: str
    program_id: AccountAddress
    expected: Optional[AccountAddress]
    actual: Optional[AccountAddress]

    def __init__(
        self,
        kind: str,
        program_id: AccountAddress,
        expected: Optional[AccountAddress] = None,
        actual: Optional[AccountAddress] = None,
        detail: str = "",
    ):
        if kind == AuthorityError.NOT_FOUND:
            message = f"Program {program_id} not found"
            if detail:
                message += f": {detail}"
        elif kind == AuthorityError.IMMUTABLE:
            message = f"Program {program_id} is immutable"
        elif kind == AuthorityError.MISMATCH:
            message = (
                f"Program {program_id} upgrade authority is {actual}, "
                f"expected {expected}"
            )
        else:
            raise ValueError(f"Unknown authority error kind: {kind}")
        super().__init__(message, Phase.VERIFY)
        self.kind = kind
        self.program_id = program_id
        self.expected = expected
        self.actual = actual


class StagingStateError(DeployError):
    def __init__(self, address: AccountAddress, reason: str, phase: Optional[Phase] = None):
        super().__init__(f"Buffer {address} is not writable: {reason}", phase)
        self.address = address
        self.reason = reason


class SubmissionError(DeployError):
    """A transaction did not land.

    Attributes:
        kind: One of EXPIRED, REJECTED or TIMEOUT.
        signature: The signature of the last submitted transaction, if any.
    """

    retryable = True

    EXPIRED: str = "expired"
    REJECTED: str = "rejected"
    TIMEOUT: str = "timeout"

    def __init__(
        self,
        kind: str,
        detail: str,
        signature: Optional[str] = None,
        phase: Optional[Phase] = None,
    ):
        super().__init__(f"Transaction {kind}: {detail}", phase)
        self.kind = kind
        self.detail = detail
        self.signature = signature


class FinalizeConflict(DeployError):
    retryable = True

    def __init__(self, address: AccountAddress, reason: str):
        super().__init__(
            f"Buffer {address} changed before finalize: {reason}", Phase.FINALIZE
        )
        self.address = address
        self.reason = reason


class ChunkFailure:
    """A chunk write that exhausted its resign budget."""

    offset: int
    length: int
    cause: Exception

    def __init__(self, offset: int, length: int, cause: Exception):
        self.offset = offset
        self.length = length
        self.cause = cause

    def __str__(self) -> str:
        return f"[{self.offset}, {self.offset + self.length}): {self.cause}"


class PartialWriteFailure(DeployError):
    retryable = True

    failures: List[ChunkFailure]

    def __init__(self, failures: List[ChunkFailure], total: int):
        ranges = ", ".join(str(failure) for failure in failures)
        super().__init__(
            f"{len(failures)} of {total} writes failed: {ranges}", Phase.STAGE_WRITE
        )
        self.failures = failures
        self.total = total
        self.resigns = 0
        if failures and not any(
            getattr(failure.cause, "retryable", True) for failure in failures
        ):
            self.retryable = False


class Test(unittest.TestCase):
    def test_retryable_classification(self):
        address = AccountAddress(b"\x01" * 32)
        self.assertFalse(SizingError(1300, 1232).retryable)
        self.assertFalse(FundingError(10, 5).retryable)
        self.assertFalse(AuthorityError(AuthorityError.IMMUTABLE, address).retryable)
        self.assertFalse(StagingStateError(address, "closed").retryable)
        self.assertTrue(SubmissionError(SubmissionError.EXPIRED, "expired").retryable)
        self.assertTrue(FinalizeConflict(address, "closed").retryable)
        self.assertTrue(PartialWriteFailure([], 0).retryable)

        permanent = SubmissionError(SubmissionError.REJECTED, "already in use")
        permanent.retryable = False
        transient = SubmissionError(SubmissionError.TIMEOUT, "timed out")
        self.assertFalse(
            PartialWriteFailure([ChunkFailure(0, 10, permanent)], 1).retryable
        )
        self.assertTrue(
            PartialWriteFailure(
                [ChunkFailure(0, 10, permanent), ChunkFailure(10, 10, transient)], 2
            ).retryable
        )

    def test_messages(self):
        program_id = AccountAddress(b"\x02" * 32)
        expected = AccountAddress(b"\x03" * 32)
        actual = AccountAddress(b"\x04" * 32)
        error = AuthorityError(AuthorityError.MISMATCH, program_id, expected, actual)
        self.assertEqual(error.phase, Phase.VERIFY)
        self.assertIn(str(actual), str(error))
        self.assertTrue(str(error).startswith("[verify]"))

        failure = PartialWriteFailure(
            [
                ChunkFailure(0, 900, Exception("expired")),
                ChunkFailure(1800, 100, Exception("rejected")),
            ],
            3,
        )
        self.assertIn("[0, 900)", str(failure))
        self.assertIn("[1800, 1900)", str(failure))

        failure.attempts = 3
        self.assertTrue(str(failure).endswith("(after 3 attempts)"))

    def test_unknown_authority_kind(self):
        with self.assertRaises(ValueError):
            AuthorityError("bogus", AccountAddress(b"\x05" * 32))
