# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Recursive Length Prefix (RLP) encoding, the serialization used for Ethereum
transactions. Only encoding is provided; the SDK never parses RLP.

Items are byte strings, non-negative integers (encoded big-endian without
leading zeros, zero as the empty string) or lists of items.
"""

from __future__ import annotations

import typing
import unittest

Item = typing.Union[bytes, int, typing.Sequence[typing.Any]]


def _length_prefix(length: int, short_offset: int) -> bytes:
    if length < 56:
        return bytes([short_offset + length])
    encoded_length = length.to_bytes((length.bit_length() + 7) // 8, "big")
    return bytes([short_offset + 55 + len(encoded_length)]) + encoded_length


def encode_int(value: int) -> bytes:
    if isinstance(value, bool) or value < 0:
        raise ValueError(f"RLP cannot encode {value!r}")
    if value == 0:
        return b""
    return value.to_bytes((value.bit_length() + 7) // 8, "big")


def encode(item: Item) -> bytes:
    if isinstance(item, int):
        return encode(encode_int(item))
    if isinstance(item, (bytes, bytearray)):
        if len(item) == 1 and item[0] < 0x80:
            return bytes(item)
        return _length_prefix(len(item), 0x80) + bytes(item)
    if isinstance(item, (list, tuple)):
        payload = b"".join(encode(child) for child in item)
        return _length_prefix(len(payload), 0xC0) + payload
    raise TypeError(f"RLP cannot encode {type(item)}")


class Test(unittest.TestCase):
    def test_vectors(self):
        self.assertEqual(encode(b"dog"), b"\x83dog")
        self.assertEqual(encode([b"cat", b"dog"]), b"\xc8\x83cat\x83dog")
        self.assertEqual(encode(b""), b"\x80")
        self.assertEqual(encode([]), b"\xc0")
        self.assertEqual(encode(0), b"\x80")
        self.assertEqual(encode(b"\x0f"), b"\x0f")
        self.assertEqual(encode(15), b"\x0f")
        self.assertEqual(encode(1024), b"\x82\x04\x00")
        self.assertEqual(encode([[], [[]], [[], [[]]]]), bytes.fromhex("c7c0c1c0c3c0c1c0"))

    def test_long_string(self):
        text = b"Lorem ipsum dolor sit amet, consectetur adipisicing elit"
        self.assertEqual(encode(text), b"\xb8\x38" + text)

    def test_negative(self):
        self.assertRaises(ValueError, encode, -1)
