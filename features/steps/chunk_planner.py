import random
import typing

from behave import given, then, use_step_matcher, when

from program_deploy.address import AccountAddress
from program_deploy.chunk_planner import Chunk, ChunkPlanner, create_chunks
from program_deploy.errors import SizingError
from program_deploy.keypair import Keypair
from program_deploy.transactions import Message, Transaction

# Use regular expressions
use_step_matcher("re")


@given(r"a payload of (?P<length>\d+) bytes")
def given_payload(context: typing.Any, length: str):
    context.payload = bytes(random.getrandbits(8) for _ in range(int(length)))


@when(r"it is sliced into chunks of (?P<chunk_size>\d+) bytes")
def when_sliced(context: typing.Any, chunk_size: str):
    context.chunks = create_chunks(context.payload, int(chunk_size))


@then(r"there should be (?P<count>\d+) chunks")
def then_chunk_count(context: typing.Any, count: str):
    assert len(context.chunks) == int(count), (
        "Expected " + count + " chunks but got " + str(len(context.chunks))
    )


@then(r"no chunk should exceed (?P<chunk_size>\d+) bytes")
def then_chunk_bound(context: typing.Any, chunk_size: str):
    assert all(len(chunk) <= int(chunk_size) for chunk in context.chunks)
    assert sum(len(chunk) for chunk in context.chunks) == len(context.payload)


@then(r"the chunks should reassemble the payload in any order")
def then_reassemble(context: typing.Any):
    shuffled = list(context.chunks)
    random.shuffle(shuffled)
    buffer = bytearray(len(context.payload))
    for chunk in shuffled:
        buffer[chunk.offset : chunk.offset + len(chunk)] = chunk.data
    assert bytes(buffer) == context.payload


@given(
    r"a write to a buffer with (?P<authority>a separate authority|the fee payer as authority)"
    r"(?P<priced> and a priority fee)?"
)
def given_write(context: typing.Any, authority: str, priced: typing.Optional[str]):
    context.payer = Keypair.generate()
    context.authority = (
        Keypair.generate() if authority == "a separate authority" else context.payer
    )
    context.buffer = AccountAddress(b"\x0b" * 32)
    context.compute_unit_price = 1_000 if priced else None


@when(r"the chunk size is calculated for a (?P<packet_size>\d+) byte packet")
def when_chunk_size(context: typing.Any, packet_size: str):
    context.packet_size = int(packet_size)
    context.planner = ChunkPlanner(
        context.payer.address(),
        context.buffer,
        context.authority.address(),
        context.compute_unit_price,
        context.packet_size,
    )
    try:
        context.chunk_size = context.planner.chunk_size()
        context.error = None
    except SizingError as e:
        context.error = e


@then(r"the chunk size should be (?P<expected>\d+)")
def then_chunk_size(context: typing.Any, expected: str):
    assert context.chunk_size == int(expected), (
        "Expected " + expected + " but got " + str(context.chunk_size)
    )


@then(r"the chunk size should be below (?P<bound>\d+)")
def then_chunk_size_below(context: typing.Any, bound: str):
    assert 0 < context.chunk_size < int(bound)


@then(r"a full chunk should fill the packet exactly")
def then_fills_packet(context: typing.Any):
    chunk = Chunk(0, b"\xff" * context.chunk_size)
    message = Message.compile(
        context.planner.instructions(chunk), context.payer.address()
    )
    txn = Transaction.new(message, [context.payer, context.authority])
    assert len(txn.to_bytes()) == context.packet_size, (
        "Expected " + str(context.packet_size) + " but got " + str(len(txn.to_bytes()))
    )


@then(r"a sizing error should be raised")
def then_sizing_error(context: typing.Any):
    assert isinstance(context.error, SizingError)
