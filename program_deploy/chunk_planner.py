# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Splits a payload into writes that each fit in one transaction.

The largest chunk a write can carry is whatever is left of the packet once
the write's envelope is accounted for: the signatures, the message header,
the account keys, the blockhash, and the zero-length write instruction
itself. One further byte is held back because the compact-u16 prefix on the
instruction data grows from one to two bytes once the data reaches 128 bytes.

Chunks are keyed by their absolute offset into the payload, so writing them
is idempotent and order independent.
"""

from __future__ import annotations

import math
import unittest
from typing import List, Optional

from . import loader
from .address import AccountAddress
from .errors import SizingError
from .keypair import Keypair
from .transactions import (
    PACKET_DATA_SIZE,
    Instruction,
    Message,
    Transaction,
    serialized_size,
)


class Chunk:
    """A slice of the payload and the offset it belongs at."""

    offset: int
    data: bytes

    def __init__(self, offset: int, data: bytes):
        self.offset = offset
        self.data = data

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Chunk):
            return NotImplemented
        return self.offset == other.offset and self.data == other.data

    def __len__(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        return f"Chunk({self.offset}, {len(self.data)} bytes)"


def calculate_max_chunk_size(
    baseline: Message, packet_size: int = PACKET_DATA_SIZE
) -> int:
    """Bytes of payload a write shaped like ``baseline`` can carry.

    ``baseline`` must be the write message with an empty chunk.

    Raises:
        SizingError: If the envelope leaves no room for data.
    """
    envelope = serialized_size(baseline)
    chunk_size = packet_size - envelope - 1
    if chunk_size <= 0:
        raise SizingError(envelope, packet_size)
    return chunk_size


def create_chunks(data: bytes, chunk_size: int) -> List[Chunk]:
    """Slice ``data`` into ``ceil(len(data) / chunk_size)`` chunks.

    Every chunk is ``chunk_size`` bytes except possibly the last.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return [
        Chunk(offset, data[offset : offset + chunk_size])
        for offset in range(0, len(data), chunk_size)
    ]


class ChunkPlanner:
    """Plans the writes of a payload into one staging buffer.

    Every write carries the same envelope: an optional compute unit price
    instruction followed by the loader write instruction.
    """

    payer: AccountAddress
    buffer: AccountAddress
    authority: AccountAddress
    compute_unit_price: Optional[int]
    packet_size: int

    def __init__(
        self,
        payer: AccountAddress,
        buffer: AccountAddress,
        authority: AccountAddress,
        compute_unit_price: Optional[int] = None,
        packet_size: int = PACKET_DATA_SIZE,
    ):
        self.payer = payer
        self.buffer = buffer
        self.authority = authority
        self.compute_unit_price = compute_unit_price
        self.packet_size = packet_size

    def instructions(self, chunk: Chunk) -> List[Instruction]:
        instructions = []
        if self.compute_unit_price is not None:
            instructions.append(loader.set_compute_unit_price(self.compute_unit_price))
        instructions.append(
            loader.write(self.buffer, self.authority, chunk.offset, chunk.data)
        )
        return instructions

    def baseline(self) -> Message:
        return Message.compile(self.instructions(Chunk(0, b"")), self.payer)

    def chunk_size(self) -> int:
        return calculate_max_chunk_size(self.baseline(), self.packet_size)

    def plan(self, payload: bytes) -> List[Chunk]:
        return create_chunks(payload, self.chunk_size())


class Test(unittest.TestCase):
    def setUp(self):
        self.payer = Keypair.generate()
        self.authority = Keypair.generate()
        self.buffer = AccountAddress(b"\x0b" * 32)

    def test_chunks_cover_payload(self):
        payload = bytes(range(256)) * 156 + b"\x01" * 64
        self.assertEqual(len(payload), 40_000)

        chunks = create_chunks(payload, 900)
        self.assertEqual(len(chunks), 45)
        self.assertTrue(all(len(chunk) == 900 for chunk in chunks[:-1]))
        self.assertEqual(len(chunks[-1]), 400)

        end = 0
        for chunk in chunks:
            self.assertEqual(chunk.offset, end)
            end += len(chunk)
        self.assertEqual(end, len(payload))
        self.assertEqual(b"".join(chunk.data for chunk in chunks), payload)

    def test_exact_multiple(self):
        chunks = create_chunks(b"\x00" * 1800, 900)
        self.assertEqual([chunk.offset for chunk in chunks], [0, 900])
        self.assertEqual(create_chunks(b"", 900), [])

    def test_chunk_size_fills_packet(self):
        planner = ChunkPlanner(
            self.payer.address(), self.buffer, self.authority.address()
        )
        chunk_size = planner.chunk_size()
        self.assertEqual(chunk_size, 916)

        chunk = Chunk(0, b"\xff" * chunk_size)
        message = Message.compile(planner.instructions(chunk), self.payer.address())
        txn = Transaction.new(message, [self.payer, self.authority])
        self.assertEqual(len(txn.to_bytes()), PACKET_DATA_SIZE)

    def test_chunk_size_with_shared_authority_and_price(self):
        planner = ChunkPlanner(self.payer.address(), self.buffer, self.payer.address())
        self.assertEqual(planner.chunk_size(), 1012)

        priced = ChunkPlanner(
            self.payer.address(), self.buffer, self.payer.address(), 1_000
        )
        chunk_size = priced.chunk_size()
        self.assertLess(chunk_size, 1012)

        for chunk in priced.plan(b"\x42" * (chunk_size * 3 + 5)):
            message = Message.compile(priced.instructions(chunk), self.payer.address())
            txn = Transaction.new(message, [self.payer])
            self.assertLessEqual(len(txn.to_bytes()), PACKET_DATA_SIZE)

    def test_sizing_error(self):
        planner = ChunkPlanner(
            self.payer.address(), self.buffer, self.authority.address(), packet_size=300
        )
        with self.assertRaises(SizingError):
            planner.chunk_size()

    def test_invalid_chunk_size(self):
        with self.assertRaises(ValueError):
            create_chunks(b"\x00", 0)
        self.assertEqual(math.ceil(10 / 3), len(create_chunks(b"\x00" * 10, 3)))
