# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Common configuration for program-deploy examples.

Environment Variables:
    PROGRAM_DEPLOY_RPC_URL: JSON-RPC endpoint of the node
    PROGRAM_DEPLOY_KEYPAIR: Key file of the account paying for deployments
"""

import os
import os.path

# :!:>section_1
NODE_URL = os.getenv("PROGRAM_DEPLOY_RPC_URL", "http://127.0.0.1:8899")

KEYPAIR_PATH = os.getenv(
    "PROGRAM_DEPLOY_KEYPAIR",
    os.path.expanduser("~/.config/program-deploy/id.json"),
)
# <:!:section_1
