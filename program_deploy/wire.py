# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Binary wire encoding for ledger transactions and loader instructions.

The ledger speaks two closely related encodings:

- **Transaction framing**: every variable length list inside a message or a
  transaction (signatures, account keys, instructions, instruction data) is
  prefixed by a *compact-u16* length, a little-endian base-128 varint capped at
  three bytes.
- **Instruction data**: loader and system instructions are bincode encoded,
  meaning ``u32`` enum tags, fixed width little-endian integers, ``u64`` length
  prefixes on byte vectors and a one byte tag in front of optional values.

Examples:
    Encoding a loader write instruction body::

        from program_deploy.wire import Serializer, Deserializer

        ser = Serializer()
        ser.u32(1)                  # Write
        ser.u32(0)                  # offset
        ser.bincode_bytes(b"\\x7fELF")
        data = ser.output()

        der = Deserializer(data)
        assert der.u32() == 1

    Framing a list of keys::

        ser = Serializer()
        ser.sequence([key_a, key_b], Serializer.struct)
"""

from __future__ import annotations

import io
import typing
import unittest
from typing import List

MAX_U8 = 2**8 - 1
MAX_U16 = 2**16 - 1
MAX_U32 = 2**32 - 1
MAX_U64 = 2**64 - 1


class Deserializer:
    """Reads wire encoded values from a byte string.

    Attributes:
        _input: Internal BytesIO stream for reading data.
        _length: Total length of the input data.
    """

    _input: io.BytesIO
    _length: int

    def __init__(self, data: bytes):
        self._length = len(data)
        self._input = io.BytesIO(data)

    def remaining(self) -> int:
        """Number of unread bytes."""
        return self._length - self._input.tell()

    def bool(self) -> bool:
        value = self.u8()
        if value == 0:
            return False
        elif value == 1:
            return True
        else:
            raise Exception("Unexpected boolean value: ", value)

    def to_bytes(self) -> bytes:
        """Read a compact-u16 prefixed byte array."""
        return self._read(self.compact_u16())

    def bincode_bytes(self) -> bytes:
        """Read a ``u64`` prefixed byte array."""
        return self._read(self.u64())

    def fixed_bytes(self, length: int) -> bytes:
        return self._read(length)

    def option(
        self, value_decoder: typing.Callable[[Deserializer], typing.Any]
    ) -> typing.Optional[typing.Any]:
        """Read a bincode option: a ``u8`` tag followed by the value when set."""
        if self.bool():
            return value_decoder(self)
        return None

    def sequence(
        self,
        value_decoder: typing.Callable[[Deserializer], typing.Any],
    ) -> List[typing.Any]:
        """Read a compact-u16 prefixed sequence."""
        length = self.compact_u16()
        values: List = []
        while len(values) < length:
            values.append(value_decoder(self))
        return values

    def struct(self, struct: typing.Any) -> typing.Any:
        return struct.deserialize(self)

    def u8(self) -> int:
        return self._read_int(1)

    def u32(self) -> int:
        return self._read_int(4)

    def u64(self) -> int:
        return self._read_int(8)

    def compact_u16(self) -> int:
        """Read a compact-u16 (short vector) length.

        Each byte carries seven bits of data and a continuation bit. At most
        three bytes are consumed and the decoded value must fit in a ``u16``.

        Raises:
            Exception: If the encoding is longer than three bytes or the value
                exceeds ``u16``.
        """
        value = 0
        for position in range(3):
            byte = self._read_int(1)
            value |= (byte & 0x7F) << (position * 7)
            if byte & 0x80 == 0:
                break
        else:
            raise Exception("Unexpectedly long compact-u16 encoding")

        if value > MAX_U16:
            raise Exception("Unexpectedly large compact-u16 value")

        return value

    def _read(self, length: int) -> bytes:
        value = self._input.read(length)
        if value is None or len(value) < length:
            actual_length = 0 if value is None else len(value)
            error = (
                f"Unexpected end of input. Requested: {length}, found: {actual_length}"
            )
            raise Exception(error)
        return value

    def _read_int(self, length: int) -> int:
        return int.from_bytes(self._read(length), byteorder="little", signed=False)


class Serializer:
    """Accumulates wire encoded values into a byte buffer.

    Attributes:
        _output: Internal BytesIO buffer for accumulating serialized data.
    """

    _output: io.BytesIO

    def __init__(self):
        self._output = io.BytesIO()

    def output(self) -> bytes:
        return self._output.getvalue()

    def bool(self, value: bool):
        self._write_int(int(value), 1)

    def to_bytes(self, value: bytes):
        """Write a compact-u16 prefixed byte array."""
        self.compact_u16(len(value))
        self._output.write(value)

    def bincode_bytes(self, value: bytes):
        """Write a ``u64`` prefixed byte array."""
        self.u64(len(value))
        self._output.write(value)

    def fixed_bytes(self, value):
        self._output.write(value)

    def option(
        self,
        value: typing.Optional[typing.Any],
        value_encoder: typing.Callable[[Serializer, typing.Any], None],
    ):
        if value is None:
            self.bool(False)
        else:
            self.bool(True)
            value_encoder(self, value)

    def sequence(
        self,
        values: typing.List[typing.Any],
        value_encoder: typing.Callable[[Serializer, typing.Any], None],
    ):
        """Write a compact-u16 prefixed sequence."""
        self.compact_u16(len(values))
        for value in values:
            self.fixed_bytes(encoder(value, value_encoder))

    def struct(self, value: typing.Any):
        value.serialize(self)

    def u8(self, value: int):
        if value > MAX_U8:
            raise Exception(f"Cannot encode {value} into u8")

        self._write_int(value, 1)

    def u32(self, value: int):
        if value > MAX_U32:
            raise Exception(f"Cannot encode {value} into u32")

        self._write_int(value, 4)

    def u64(self, value: int):
        if value > MAX_U64:
            raise Exception(f"Cannot encode {value} into u64")

        self._write_int(value, 8)

    def compact_u16(self, value: int):
        """Write a compact-u16 (short vector) length.

        Values below 0x80 take one byte, below 0x4000 two bytes, and the rest
        of the ``u16`` range three bytes.

        Raises:
            Exception: If the value exceeds the ``u16`` range.
        """
        if value > MAX_U16:
            raise Exception(f"Cannot encode {value} into compact-u16")

        while value >= 0x80:
            # Write 7 (lowest) bits of data and set the 8th bit to 1.
            self.u8((value & 0x7F) | 0x80)
            value >>= 7

        self.u8(value & 0x7F)

    def _write_int(self, value: int, length: int):
        self._output.write(value.to_bytes(length, "little", signed=False))


def encoder(
    value: typing.Any, encoder: typing.Callable[[Serializer, typing.Any], typing.Any]
) -> bytes:
    """Encode a single value with ``encoder`` and return the bytes."""
    ser = Serializer()
    encoder(ser, value)
    return ser.output()


def compact_u16_length(value: int) -> int:
    """Number of bytes the compact-u16 encoding of ``value`` occupies."""
    return len(encoder(value, Serializer.compact_u16))


class Test(unittest.TestCase):
    def test_bool_error(self):
        ser = Serializer()
        ser.u8(32)
        der = Deserializer(ser.output())
        with self.assertRaises(Exception):
            der.bool()

    def test_bytes(self):
        in_value = b"1234567890"

        ser = Serializer()
        ser.to_bytes(in_value)
        self.assertEqual(ser.output()[0], len(in_value))
        der = Deserializer(ser.output())
        self.assertEqual(der.to_bytes(), in_value)

    def test_bincode_bytes(self):
        in_value = b"\x00\x01\x02"

        ser = Serializer()
        ser.bincode_bytes(in_value)
        self.assertEqual(ser.output(), b"\x03" + b"\x00" * 7 + in_value)
        der = Deserializer(ser.output())
        self.assertEqual(der.bincode_bytes(), in_value)

    def test_option(self):
        ser = Serializer()
        ser.option(None, Serializer.u32)
        ser.option(7, Serializer.u32)
        self.assertEqual(ser.output(), b"\x00\x01\x07\x00\x00\x00")

        der = Deserializer(ser.output())
        self.assertIsNone(der.option(Deserializer.u32))
        self.assertEqual(der.option(Deserializer.u32), 7)

    def test_sequence(self):
        in_value = [1, 2, 3]

        ser = Serializer()
        ser.sequence(in_value, Serializer.u32)
        der = Deserializer(ser.output())
        self.assertEqual(der.sequence(Deserializer.u32), in_value)

    def test_compact_u16_known_encodings(self):
        cases = {
            0x0: b"\x00",
            0x7F: b"\x7f",
            0x80: b"\x80\x01",
            0xFF: b"\xff\x01",
            0x100: b"\x80\x02",
            0x3FFF: b"\xff\x7f",
            0x4000: b"\x80\x80\x01",
            0xFFFF: b"\xff\xff\x03",
        }
        for value, expected in cases.items():
            self.assertEqual(encoder(value, Serializer.compact_u16), expected)
            self.assertEqual(Deserializer(expected).compact_u16(), value)
            self.assertEqual(compact_u16_length(value), len(expected))

    def test_compact_u16_out_of_range(self):
        with self.assertRaises(Exception):
            Serializer().compact_u16(MAX_U16 + 1)
        with self.assertRaises(Exception):
            Deserializer(b"\x80\x80\x80\x01").compact_u16()

    def test_short_input(self):
        der = Deserializer(b"\x01\x02")
        with self.assertRaisesRegex(Exception, "Unexpected end of input"):
            der.u32()


if __name__ == "__main__":
    unittest.main()
