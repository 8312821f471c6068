# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Execution readiness.

An action moves through ``CREATED -> COLLECTING -> READY_TO_EXECUTE ->
SUBMITTED -> EXECUTED | FAILED``. Only the first three and ``EXECUTED`` are a
function of the signature set itself; ``SUBMITTED`` and ``FAILED`` describe a
single execution attempt and are reported by the executor. A failed attempt
leaves the set ``READY_TO_EXECUTE`` so it can be retried.
"""

from __future__ import annotations

import unittest
from enum import Enum

from .signature_store import SignatureEntry, SignatureSet, SigningContext
from .typed_data import MessagePayload


class CoordinationState(Enum):
    CREATED = "created"
    COLLECTING = "collecting"
    READY_TO_EXECUTE = "ready to execute"
    SUBMITTED = "submitted"
    EXECUTED = "executed"
    FAILED = "failed"


def ready(valid_owner_signature_count: int, threshold: int) -> bool:
    """True once enough valid owner signatures are present. Advisory only."""
    return valid_owner_signature_count >= threshold


def coordination_state(
    signature_set: SignatureSet, valid_owner_signature_count: int, threshold: int
) -> CoordinationState:
    if signature_set.executed:
        return CoordinationState.EXECUTED
    if ready(valid_owner_signature_count, threshold):
        return CoordinationState.READY_TO_EXECUTE
    if len(signature_set) == 0:
        return CoordinationState.CREATED
    return CoordinationState.COLLECTING


class Test(unittest.TestCase):
    def test_ready_is_monotonic(self):
        self.assertEqual([ready(count, 2) for count in range(5)], [False, False, True, True, True])

    def test_states(self):
        context = SigningContext("0x" + "aa" * 20, 1, MessagePayload.from_text("hello"))
        empty = SignatureSet(context)
        self.assertEqual(coordination_state(empty, 0, 2), CoordinationState.CREATED)

        entry = SignatureEntry("0x" + "bb" * 20, b"\x01" * 65)
        one = SignatureSet(context, {entry.key: entry})
        self.assertEqual(coordination_state(one, 1, 2), CoordinationState.COLLECTING)
        self.assertEqual(coordination_state(one, 2, 2), CoordinationState.READY_TO_EXECUTE)
