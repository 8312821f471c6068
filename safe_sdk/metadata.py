# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Client identification for JSON-RPC requests.

Every request made by :class:`safe_sdk.async_client.RpcClient` carries a
``x-safe-sdk-client`` header naming this SDK and its installed version, so node
operators can tell its traffic apart in their logs.
"""

import importlib.metadata as metadata

# Package name constant for metadata lookup
PACKAGE_NAME = "safe-message-sdk"


class Metadata:
    CLIENT_HEADER = "x-safe-sdk-client"

    @staticmethod
    def get_client_header_val():
        """Header value in the form ``safe-python-sdk/{version}``.

        Raises:
            PackageNotFoundError: If the package is not installed.
        """
        version = metadata.version(PACKAGE_NAME)
        return f"safe-python-sdk/{version}"
