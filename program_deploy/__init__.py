# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
program-deploy - deploys and upgrades programs on an account-based ledger.

A program too large for one transaction is written in chunks to a staging
buffer owned by the upgradeable loader, and the buffer is then deployed as a
new program or swapped in as the next version of an existing one.

Quick Start:
    Deploying a program::

        import asyncio
        from program_deploy.async_client import RpcClient
        from program_deploy.deployer import DeploymentTarget, ProgramDeployer
        from program_deploy.keypair import Keypair

        async def main():
            client = RpcClient("http://127.0.0.1:8899")
            payer = Keypair.load("payer.json")
            target = DeploymentTarget.new(Keypair.generate(), payer)

            deployer = ProgramDeployer(client, payer)
            with open("program.so", "rb") as f:
                result = await deployer.deploy(target, f.read())
            print(f"Deployed {result.program_id}: {result.signature}")

            await client.close()

        asyncio.run(main())

Module Organization:
    Pipeline:
    - **chunk_planner**: Sizing and slicing a payload into writes
    - **staging**: Creating and checking staging buffers
    - **transaction_worker**: Concurrent signing, submission and confirmation
    - **verifier**: Read-only checks on program accounts
    - **deployer**: The deploy and upgrade state machine
    - **program_manager**: Inspecting, handing over, closing and extending

    Ledger:
    - **async_client**: The ledger capability and its JSON-RPC client
    - **memory_ledger**: An in-process ledger for tests
    - **validity_window**: Shared recent blockhash tracking
    - **loader**: Upgradeable loader instructions and account layouts
    - **transactions**: Messages, transactions and their wire size
    - **wire**: Binary serialization
"""
