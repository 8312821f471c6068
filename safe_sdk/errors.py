# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Exception hierarchy shared by the Safe SDK.

Every error raised by the SDK derives from :class:`SafeSdkError` so callers can
catch the whole family at a command boundary. The classes follow how failures
are expected to propagate:

- :class:`InputValidationError`: malformed address, chain id, signature length.
  Raised before any state is touched.
- :class:`ConsistencyError`: a persisted signature record disagrees with the
  freshly computed context. Never repaired automatically.
- :class:`NetworkError`: the RPC endpoint is unreachable, answered with an
  error, or a call reverted outside of signature verification.
- :class:`VerificationFailure`: the reason attached to a single rejected
  signature. Verification passes report these per entry instead of raising.
- :class:`ExecutionError`: execution refused (too few signatures) or the
  submitted transaction reverted. The signature set stays ready for a retry.
- :class:`ConfirmationTimeoutError`: confirmation polling ran out of attempts.
  Recoverable, the caller may poll again later.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class SafeSdkError(Exception):
    """Base exception for all Safe SDK errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputValidationError(SafeSdkError, ValueError):
    """Caller supplied malformed input (address, chain id, signature...)."""


class ConsistencyError(SafeSdkError):
    """A persisted signature set does not match the computed signing context."""


class NetworkError(SafeSdkError):
    """The RPC endpoint failed, returned an error or could not be reached."""

    status_code: Optional[int]

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code:
            return f"NetworkError ({self.status_code}): {self.message}"
        return f"NetworkError: {self.message}"


class CallRevertedError(NetworkError):
    """An eth_call or transaction reverted on-chain."""

    data: bytes

    def __init__(self, message: str, data: bytes = b""):
        super().__init__(message, None)
        self.data = data


class VerificationFailure(str, Enum):
    """Reason a single signature was not counted towards the threshold."""

    MALFORMED_SIGNATURE = "malformed signature"
    UNSUPPORTED_SIGNATURE_TYPE = "unsupported signature type"
    RECOVERY_FAILED = "recovery failed"
    SIGNER_MISMATCH = "recovered signer mismatch"
    NOT_OWNER = "signer is not an owner"
    MAGIC_VALUE_MISMATCH = "on-chain magic value mismatch"
    CALL_FAILED = "on-chain call failed"


class ExecutionError(SafeSdkError):
    """Execution was refused or the submitted transaction reverted."""

    transaction_hash: Optional[str]

    def __init__(self, message: str, transaction_hash: Optional[str] = None):
        super().__init__(message)
        self.transaction_hash = transaction_hash


class ConfirmationTimeoutError(SafeSdkError, TimeoutError):
    """Polling for a confirmation exceeded its attempt budget."""

    attempts: int

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts
