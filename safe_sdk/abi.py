# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Solidity ABI encoding and decoding for the Safe contract surface.

This module implements the subset of the Ethereum contract ABI needed to talk
to a Safe account: static words (``address``, ``bool``, ``uintN``,
``bytes32``) and the dynamic ``bytes`` and ``address[]`` types. It
also exposes :func:`keccak256`, the hash used throughout EIP-712 and address
derivation.

Encoding Rules:
- Every static value occupies one 32-byte word (numbers big-endian and left
  padded, fixed byte strings right padded).
- Dynamic values store an offset in the head and their length-prefixed,
  right-padded content in the tail.
- Function calls are prefixed by the first four bytes of the keccak-256 hash
  of the canonical signature.

Examples:
    Encoding a call::

        encoder = Encoder()
        encoder.bytes32(digest)
        encoder.bytes(signature)
        calldata = function_selector("isValidSignature(bytes32,bytes)") + encoder.output()

    Decoding a result::

        owners = Decoder(result).address_array()
"""

from __future__ import annotations

import typing
import unittest

from Crypto.Hash import keccak

WORD_SIZE = 32
MAX_U8 = 2**8 - 1
MAX_U256 = 2**256 - 1


def keccak256(data: bytes) -> bytes:
    """Return the keccak-256 digest (the Ethereum variant, not SHA3-256)."""
    hasher = keccak.new(digest_bits=256)
    hasher.update(data)
    return hasher.digest()


def function_selector(signature: str) -> bytes:
    """Four-byte selector of a canonical function signature such as ``nonce()``."""
    return keccak256(signature.encode("ascii"))[:4]


def _pad_right(value: bytes) -> bytes:
    remainder = len(value) % WORD_SIZE
    if remainder == 0:
        return value
    return value + b"\x00" * (WORD_SIZE - remainder)


class Encoder:
    """Head/tail ABI encoder for a flat tuple of arguments.

    Arguments are appended in declaration order. Static arguments are written
    to the head directly; dynamic arguments leave an offset in the head and are
    laid out in the tail when :meth:`output` is called.

    Examples:
        >>> encoder = Encoder()
        >>> encoder.uint(1, 256)
        >>> encoder.bytes(b"hello")
        >>> len(encoder.output())
        128
    """

    _head: typing.List[typing.Optional[bytes]]
    _tails: typing.List[typing.Tuple[int, bytes]]

    def __init__(self):
        self._head = []
        self._tails = []

    def output(self) -> bytes:
        head_size = WORD_SIZE * len(self._head)
        tail = b""
        words = list(self._head)
        for index, content in self._tails:
            words[index] = (head_size + len(tail)).to_bytes(WORD_SIZE, "big")
            tail += content
        return b"".join(typing.cast(typing.List[bytes], words)) + tail

    def address(self, value: typing.Any):
        raw = value if isinstance(value, (bytes, bytearray)) else bytes(value)
        if len(raw) != 20:
            raise ValueError(f"Cannot encode {len(raw)} bytes as an address")
        self._head.append(b"\x00" * 12 + bytes(raw))

    def bool(self, value: bool):
        self.uint(int(value), 8)

    def uint(self, value: int, bits: int = 256):
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"Cannot encode {value!r} as uint{bits}")
        if value < 0 or value > 2**bits - 1:
            raise ValueError(f"Cannot encode {value} into uint{bits}")
        self._head.append(value.to_bytes(WORD_SIZE, "big"))

    def fixed_bytes(self, value: bytes):
        """Write a ``bytes1``..``bytes32`` value, right padded."""
        if len(value) > WORD_SIZE:
            raise ValueError(f"Cannot encode {len(value)} bytes as a fixed word")
        self._head.append(_pad_right(bytes(value)))

    def bytes32(self, value: bytes):
        if len(value) != WORD_SIZE:
            raise ValueError(f"Expected 32 bytes, got {len(value)}")
        self.fixed_bytes(value)

    def bytes(self, value: bytes):
        """Write a dynamic ``bytes`` value."""
        self._tails.append(
            (
                len(self._head),
                len(value).to_bytes(WORD_SIZE, "big") + _pad_right(bytes(value)),
            )
        )
        self._head.append(None)


class Decoder:
    """Sequential decoder for ABI-encoded return data.

    Each accessor consumes the next head word. Dynamic values follow the
    offset stored in the head relative to the start of the data.
    """

    _data: bytes
    _position: int

    def __init__(self, data: bytes):
        self._data = data
        self._position = 0

    def address(self) -> bytes:
        word = self._word()
        if any(word[:12]):
            raise ValueError("Address word has non-zero padding")
        return word[12:]

    def bool(self) -> bool:
        value = self.uint256()
        if value not in (0, 1):
            raise ValueError(f"Unexpected boolean value: {value}")
        return value == 1

    def uint256(self) -> int:
        return int.from_bytes(self._word(), "big")

    def bytes32(self) -> bytes:
        return self._word()

    def bytes(self) -> bytes:
        offset = self.uint256()
        length = self._word_at(offset)
        start = offset + WORD_SIZE
        return self._slice(start, length)

    def address_array(self) -> typing.List[bytes]:
        offset = self.uint256()
        length = self._word_at(offset)
        values = []
        for i in range(length):
            word = self._slice(offset + WORD_SIZE * (i + 1), WORD_SIZE)
            values.append(word[12:])
        return values

    def _word(self) -> bytes:
        word = self._slice(self._position, WORD_SIZE)
        self._position += WORD_SIZE
        return word

    def _word_at(self, offset: int) -> int:
        return int.from_bytes(self._slice(offset, WORD_SIZE), "big")

    def _slice(self, start: int, length: int) -> bytes:
        if start + length > len(self._data):
            raise ValueError(
                f"Unexpected end of ABI data: wanted {length} bytes at {start}, "
                f"have {len(self._data)}"
            )
        return self._data[start : start + length]


class Test(unittest.TestCase):
    def test_keccak256(self):
        self.assertEqual(
            keccak256(b"").hex(),
            "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470",
        )

    def test_function_selector(self):
        self.assertEqual(
            function_selector("isValidSignature(bytes32,bytes)").hex(), "1626ba7e"
        )
        self.assertEqual(function_selector("getOwners()").hex(), "a0e67e2b")
        self.assertEqual(function_selector("getThreshold()").hex(), "e75235b8")
        self.assertEqual(function_selector("nonce()").hex(), "affed0e0")

    def test_static_and_dynamic(self):
        encoder = Encoder()
        encoder.uint(7)
        encoder.bytes(b"\xab" * 33)
        encoder.address(b"\x11" * 20)
        output = encoder.output()

        self.assertEqual(len(output), 3 * WORD_SIZE + WORD_SIZE + 2 * WORD_SIZE)
        decoder = Decoder(output)
        self.assertEqual(decoder.uint256(), 7)
        self.assertEqual(decoder.bytes(), b"\xab" * 33)
        self.assertEqual(decoder.address(), b"\x11" * 20)

    def test_empty_bytes(self):
        encoder = Encoder()
        encoder.bytes(b"")
        output = encoder.output()
        self.assertEqual(output, (32).to_bytes(32, "big") + (0).to_bytes(32, "big"))

    def test_address_array(self):
        data = (
            (32).to_bytes(32, "big")
            + (2).to_bytes(32, "big")
            + b"\x00" * 12
            + b"\x01" * 20
            + b"\x00" * 12
            + b"\x02" * 20
        )
        self.assertEqual(Decoder(data).address_array(), [b"\x01" * 20, b"\x02" * 20])

    def test_range_checks(self):
        encoder = Encoder()
        with self.assertRaises(ValueError):
            encoder.uint(256, 8)
        with self.assertRaises(ValueError):
            encoder.uint(-1)
        with self.assertRaises(ValueError):
            Decoder(b"\x00" * 4).uint256()
