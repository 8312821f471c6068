"""
Example scripts for the Safe Python SDK.

- message_signing: 2-of-3 message attestation against a simulated Safe, offline
- transfer: prepare, sign and execute a value transfer against a live node

Run them as modules from the repository root, e.g.
``python -m examples.message_signing``. Configuration lives in
:mod:`examples.common`.
"""
