# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Deploys a program, upgrades it in place and then removes its upgrade
authority.

The payer at ``KEYPAIR_PATH`` must be funded on the node at ``NODE_URL``.
"""

import asyncio
import sys

from program_deploy.async_client import ClientConfig, RpcClient
from program_deploy.deployer import DeploymentTarget, ProgramDeployer
from program_deploy.keypair import Keypair
from program_deploy.program_manager import ProgramManager

from .common import KEYPAIR_PATH, NODE_URL


async def main(program_path: str):
    client_config = ClientConfig()
    client_config.transaction_wait_in_seconds = 120
    client = RpcClient(NODE_URL, client_config)

    payer = Keypair.load(KEYPAIR_PATH)
    balance = await client.account_balance(payer.address())
    print(f"Payer: {payer.address()} {balance}")

    with open(program_path, "rb") as f:
        program = f.read()

    deployer = ProgramDeployer(client, payer)
    target = DeploymentTarget.new(Keypair.generate(), payer)

    print("=== Deploying program ===")
    result = await deployer.deploy(target, program, max_len=len(program) * 2)
    print(f"Program {result.program_id} deployed in {result.signature}")
    print(f"{result.chunks_written} chunks, {result.resigns} re-signed")

    print("=== Upgrading program ===")
    result = await deployer.upgrade(target, program)
    print(f"Upgraded in {result.signature}")

    print("=== Making program final ===")
    manager = ProgramManager(client, payer)
    await manager.set_upgrade_authority(result.program_id, payer, None)
    print(await manager.show(result.program_id))

    await client.close()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1]))
