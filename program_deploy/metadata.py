"""
Client identification for requests made by program-deploy.

Every JSON-RPC request carries a header naming the client and its version so
node operators can tell deployment traffic apart in their logs.

Examples:
    Building headers for a custom HTTP client::

        from program_deploy.metadata import Metadata

        headers = {Metadata.CLIENT_HEADER: Metadata.get_client_header_val()}
"""

import importlib.metadata as metadata

# Package name constant for metadata lookup
PACKAGE_NAME = "program-deploy"


class Metadata:
    # HTTP header name for client identification
    CLIENT_HEADER = "x-program-deploy-client"

    @staticmethod
    def get_client_header_val():
        """The header value, ``program-deploy/{version}``.

        Raises:
            PackageNotFoundError: If the package is not installed.
        """
        version = metadata.version(PACKAGE_NAME)
        return f"program-deploy/{version}"
