# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Command line interface for deploying and managing upgradeable programs.

Supported Commands:
- deploy: Deploy a new program, or upgrade it if it already exists
- upgrade: Upgrade an existing program
- write-buffer: Stage a program into a buffer without deploying it
- show: Describe a program or buffer
- set-upgrade-authority: Hand a program to another authority or make it final
- set-buffer-authority: Hand a buffer to another authority
- close: Close a program or buffer and reclaim its rent
- extend: Grow a program's data account
- dump: Write the bytes of a program or buffer to a file

Keypairs are JSON key files. Defaults for the common options can be kept in
a TOML file passed with ``--config``::

    rpc_url = "http://127.0.0.1:8899"
    keypair = "~/.config/deployer.json"
    max_retries = 2
    max_sign_attempts = 6
    concurrency = 16
    compute_unit_price = 1000

The RPC endpoint can also be given with the ``PROGRAM_DEPLOY_RPC_URL``
environment variable. When no compute unit price is configured, the median
of recently paid prices is used.

Examples:
    Deploying a program::

        python -m program_deploy.cli deploy \
            --keypair ./payer.json \
            --program ./target/deploy/program.so \
            --program-keypair ./target/deploy/program-keypair.json \
            --max-len 200000

    Removing the upgrade authority::

        python -m program_deploy.cli set-upgrade-authority \
            --keypair ./payer.json \
            --program-id 0x5e1f... \
            --upgrade-authority ./payer.json \
            --final
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import io
import os
import sys
import tempfile
import unittest
import unittest.mock
from typing import Any, Dict, List, Optional

import tomli

from .address import AccountAddress
from .async_client import (
    TRANSPORT_ERRORS,
    AccountNotFound,
    ClientConfig,
    LedgerClient,
    RpcClient,
)
from .deployer import DeploymentTarget, ProgramDeployer
from .errors import DeployError
from .keypair import Keypair
from .memory_ledger import LAMPORTS_PER_SOL, InMemoryLedger
from .program_manager import ProgramManager
from .transaction_worker import RetryBudget, SubmitterConfig

DEFAULT_RPC_URL = "http://127.0.0.1:8899"
RPC_URL_ENV = "PROGRAM_DEPLOY_RPC_URL"

COMMANDS = [
    "deploy",
    "upgrade",
    "write-buffer",
    "show",
    "set-upgrade-authority",
    "set-buffer-authority",
    "close",
    "extend",
    "dump",
]


def load_config(path: Optional[str]) -> Dict[str, Any]:
    if path is None:
        return {}
    with open(os.path.expanduser(path), "rb") as f:
        return tomli.load(f)


def retry_budget(max_retries: int, max_sign_attempts: int) -> RetryBudget:
    """Translate the operator facing knobs into a :class:`RetryBudget`."""
    if max_retries < 0 or max_sign_attempts < 1:
        raise ValueError("max_retries must be >= 0 and max_sign_attempts >= 1")
    return RetryBudget(
        max_resigns=max_sign_attempts - 1, max_attempts=max_retries + 1
    )


def read_program(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Upgradeable program deployment")
    parser.add_argument(
        "command", type=str, help="The command to execute", choices=COMMANDS
    )
    parser.add_argument("--config", help="TOML file with default options", type=str)
    parser.add_argument(
        "--url", help=f"RPC endpoint URL, defaults to ${RPC_URL_ENV}", type=str
    )
    parser.add_argument("--keypair", help="Fee payer keypair file", type=str)
    parser.add_argument(
        "--max-retries",
        help="Outer attempts after the first, each with a new buffer",
        type=int,
    )
    parser.add_argument(
        "--max-sign-attempts",
        help="Times a single transaction is signed before giving up",
        type=int,
    )
    parser.add_argument("--concurrency", help="Concurrent chunk writes", type=int)
    parser.add_argument(
        "--compute-unit-price", help="Priority fee in micro-lamports", type=int
    )

    parser.add_argument("--program", help="Path to the program binary", type=str)
    parser.add_argument("--program-keypair", help="Program keypair file", type=str)
    parser.add_argument(
        "--program-id", help="Program address", type=AccountAddress.from_str_relaxed
    )
    parser.add_argument(
        "--upgrade-authority",
        help="Upgrade authority keypair file, defaults to the fee payer",
        type=str,
    )
    parser.add_argument(
        "--buffer", help="Buffer address", type=AccountAddress.from_str_relaxed
    )
    parser.add_argument(
        "--buffer-authority",
        help="Buffer authority keypair file, defaults to the fee payer",
        type=str,
    )
    parser.add_argument(
        "--max-len", help="Maximum program size to reserve space for", type=int
    )
    parser.add_argument(
        "--final", help="Remove the upgrade authority", action="store_true"
    )
    parser.add_argument(
        "--address",
        help="Program or buffer address",
        type=AccountAddress.from_str_relaxed,
    )
    parser.add_argument(
        "--new-upgrade-authority",
        help="New upgrade authority address",
        type=AccountAddress.from_str_relaxed,
    )
    parser.add_argument(
        "--new-upgrade-authority-signer",
        help="New upgrade authority keypair file, makes the change checked",
        type=str,
    )
    parser.add_argument(
        "--new-buffer-authority",
        help="New buffer authority address",
        type=AccountAddress.from_str_relaxed,
    )
    parser.add_argument(
        "--recipient",
        help="Address receiving reclaimed lamports, defaults to the fee payer",
        type=AccountAddress.from_str_relaxed,
    )
    parser.add_argument(
        "--additional-bytes", help="Bytes to add to the program", type=int
    )
    parser.add_argument("--output", help="File to dump program bytes into", type=str)
    return parser


async def run(
    parsed_args: argparse.Namespace,
    parser: argparse.ArgumentParser,
    client: LedgerClient,
    fee_payer: Keypair,
    config: Dict[str, Any],
):
    def option(name: str, default: Any) -> Any:
        value = getattr(parsed_args, name)
        if value is not None:
            return value
        return config.get(name, default)

    def load_keypair(path: Optional[str], name: str) -> Keypair:
        if path is None:
            return fee_payer
        try:
            return Keypair.load(os.path.expanduser(path))
        except FileNotFoundError:
            parser.error(f"{name} file not found: {path}")
        except Exception as e:
            parser.error(f"Failed to load {name}: {e}")

    try:
        budget = retry_budget(option("max_retries", 2), option("max_sign_attempts", 6))
    except ValueError as e:
        parser.error(str(e))
    submitter_config = SubmitterConfig(concurrency=option("concurrency", 16))

    price = option("compute_unit_price", None)
    if price is None and parsed_args.command in ("deploy", "upgrade", "write-buffer"):
        price = await ProgramManager(client, fee_payer).recommended_priority_fee()
        price = price or None
    manager = ProgramManager(client, fee_payer, budget, price)
    command = parsed_args.command

    if command in ("deploy", "upgrade", "write-buffer"):
        if parsed_args.program is None and (
            command == "write-buffer" or parsed_args.buffer is None
        ):
            parser.error("Missing required argument '--program'")
        payload = read_program(parsed_args.program) if parsed_args.program else b""
        deployer = ProgramDeployer(client, fee_payer, budget, submitter_config, price)

        if command == "write-buffer":
            authority = load_keypair(parsed_args.buffer_authority, "buffer authority")
            staging = await deployer.write_buffer(
                payload, authority, parsed_args.max_len
            )
            print(f"Buffer: {staging.address}")
            return

        authority = load_keypair(parsed_args.upgrade_authority, "upgrade authority")
        if command == "deploy" and parsed_args.program_keypair is not None:
            program_keypair = load_keypair(parsed_args.program_keypair, "program keypair")
            if (
                parsed_args.program_id is not None
                and parsed_args.program_id != program_keypair.address()
            ):
                parser.error("'--program-id' does not match '--program-keypair'")
            target = DeploymentTarget.new(program_keypair, authority)
        elif parsed_args.program_id is not None:
            target = DeploymentTarget(parsed_args.program_id, authority)
        elif command == "deploy":
            parser.error("Missing required argument '--program-keypair'")
        else:
            parser.error("Missing required argument '--program-id'")

        if command == "deploy":
            result = await deployer.deploy(
                target,
                payload,
                parsed_args.max_len,
                parsed_args.buffer,
                parsed_args.final,
            )
        else:
            result = await deployer.upgrade(
                target, payload, parsed_args.buffer, parsed_args.final
            )

        print(f"Program Id: {result.program_id}")
        print(f"Signature: {result.signature}")
        if result.chunks_written:
            print(
                f"Wrote {result.chunks_written} chunks with {result.resigns} resigns "
                f"and {result.outer_retries} retries"
            )
        if result.immutability_error is not None:
            print(f"Warning: program was not made final: {result.immutability_error}")
        elif result.final_authority is None:
            print("Program is final")

    elif command == "show":
        if parsed_args.address is None:
            parser.error("Missing required argument '--address'")
        print(await manager.show(parsed_args.address))

    elif command == "set-upgrade-authority":
        if parsed_args.program_id is None:
            parser.error("Missing required argument '--program-id'")
        if parsed_args.final == (parsed_args.new_upgrade_authority is not None):
            parser.error(
                "Exactly one of '--new-upgrade-authority' or '--final' is required"
            )
        authority = load_keypair(parsed_args.upgrade_authority, "upgrade authority")
        signer = None
        if parsed_args.new_upgrade_authority_signer is not None:
            signer = load_keypair(
                parsed_args.new_upgrade_authority_signer, "new upgrade authority"
            )
        await manager.set_upgrade_authority(
            parsed_args.program_id,
            authority,
            parsed_args.new_upgrade_authority,
            signer,
        )
        new_authority = parsed_args.new_upgrade_authority
        print(f"Account Type: Program\nAuthority: {new_authority or 'none'}")

    elif command == "set-buffer-authority":
        if parsed_args.buffer is None:
            parser.error("Missing required argument '--buffer'")
        if parsed_args.new_buffer_authority is None:
            parser.error("Missing required argument '--new-buffer-authority'")
        authority = load_keypair(parsed_args.buffer_authority, "buffer authority")
        await manager.set_buffer_authority(
            parsed_args.buffer, authority, parsed_args.new_buffer_authority
        )
        print(f"Account Type: Buffer\nAuthority: {parsed_args.new_buffer_authority}")

    elif command == "close":
        if parsed_args.address is None:
            parser.error("Missing required argument '--address'")
        authority = load_keypair(
            parsed_args.upgrade_authority or parsed_args.buffer_authority, "authority"
        )
        reclaimed = await manager.close(
            parsed_args.address, authority, parsed_args.recipient
        )
        print(f"Closed {parsed_args.address}, reclaimed {reclaimed / LAMPORTS_PER_SOL} SOL")

    elif command == "extend":
        if parsed_args.program_id is None:
            parser.error("Missing required argument '--program-id'")
        if parsed_args.additional_bytes is None:
            parser.error("Missing required argument '--additional-bytes'")
        await manager.extend(parsed_args.program_id, parsed_args.additional_bytes)
        print(
            f"Extended program {parsed_args.program_id} by "
            f"{parsed_args.additional_bytes} bytes"
        )

    elif command == "dump":
        if parsed_args.address is None:
            parser.error("Missing required argument '--address'")
        if parsed_args.output is None:
            parser.error("Missing required argument '--output'")
        written = await manager.dump(parsed_args.address, parsed_args.output)
        print(f"Wrote {written} bytes to {parsed_args.output}")


async def main(args: List[str]):
    parser = build_parser()
    parsed_args = parser.parse_args(args)

    try:
        config = load_config(parsed_args.config)
    except (OSError, tomli.TOMLDecodeError) as e:
        parser.error(f"Failed to load config: {e}")

    url = parsed_args.url or os.getenv(RPC_URL_ENV) or config.get("rpc_url", DEFAULT_RPC_URL)
    keypair_path = parsed_args.keypair or config.get("keypair")
    if keypair_path is None:
        parser.error("Missing required argument '--keypair'")
    try:
        fee_payer = Keypair.load(os.path.expanduser(keypair_path))
    except FileNotFoundError:
        parser.error(f"Keypair file not found: {keypair_path}")
    except Exception as e:
        parser.error(f"Failed to load keypair: {e}")

    client = RpcClient(url, ClientConfig())
    try:
        await run(parsed_args, parser, client, fee_payer, config)
    except (DeployError, AccountNotFound) + TRANSPORT_ERRORS as e:
        parser.exit(1, f"Error: {e}\n")
    finally:
        await client.close()


class Test(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.ledger = InMemoryLedger()
        self.payer = Keypair.generate()
        self.ledger.airdrop(self.payer.address(), 100 * LAMPORTS_PER_SOL)
        self.payer_path = self.store(self.payer, "payer.json")
        patcher = unittest.mock.patch(
            "program_deploy.cli.RpcClient", return_value=self.ledger
        )
        self.rpc_client = patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self.tmp.cleanup()

    def path(self, name: str) -> str:
        return os.path.join(self.tmp.name, name)

    def store(self, keypair: Keypair, name: str) -> str:
        keypair.store(self.path(name))
        return self.path(name)

    async def cli(self, *args: str) -> str:
        output = io.StringIO()
        with contextlib.redirect_stdout(output):
            await main(["--keypair", self.payer_path, *args])
        return output.getvalue()

    async def test_deploy_show_and_finalize(self):
        program = Keypair.generate()
        program_path = self.store(program, "program.json")
        with open(self.path("program.so"), "wb") as f:
            f.write(b"\x7fELF" + b"\x00" * 3000)

        output = await self.cli(
            "deploy",
            "--program",
            self.path("program.so"),
            "--program-keypair",
            program_path,
            "--compute-unit-price",
            "10",
        )
        self.assertIn(f"Program Id: {program.address()}", output)
        self.assertEqual(self.ledger.program_bytes(program.address())[:4], b"\x7fELF")
        self.assertEqual(set(self.ledger.compute_unit_prices), {10})

        output = await self.cli("show", "--address", str(program.address()))
        self.assertIn(f"Authority: {self.payer.address()}", output)

        output = await self.cli(
            "set-upgrade-authority", "--program-id", str(program.address()), "--final"
        )
        self.assertIn("Authority: none", output)

        with contextlib.redirect_stderr(io.StringIO()) as errors:
            with self.assertRaises(SystemExit):
                await self.cli(
                    "upgrade",
                    "--program",
                    self.path("program.so"),
                    "--program-id",
                    str(program.address()),
                )
        self.assertIn("immutable", errors.getvalue())

    async def test_config_file(self):
        with open(self.path("config.toml"), "w") as f:
            f.write(f'rpc_url = "http://localhost:9999"\nkeypair = "{self.payer_path}"\n')
            f.write("max_retries = 0\nmax_sign_attempts = 2\n")
        with open(self.path("program.so"), "wb") as f:
            f.write(b"\x01" * 500)

        output = io.StringIO()
        with contextlib.redirect_stdout(output):
            await main(
                [
                    "write-buffer",
                    "--config",
                    self.path("config.toml"),
                    "--program",
                    self.path("program.so"),
                ]
            )
        self.assertEqual(self.rpc_client.call_args[0][0], "http://localhost:9999")
        self.assertIn("Buffer: ", output.getvalue())
        self.assertEqual(self.ledger.calls["recent_prioritization_fees"], 1)

    async def test_dump(self):
        program = Keypair.generate()
        payload = os.urandom(2500)
        with open(self.path("program.so"), "wb") as f:
            f.write(payload)
        await self.cli(
            "deploy",
            "--program",
            self.path("program.so"),
            "--program-keypair",
            self.store(program, "program.json"),
        )

        output = await self.cli(
            "dump", "--address", str(program.address()), "--output", self.path("dump.so")
        )
        self.assertIn(f"Wrote 2500 bytes to {self.path('dump.so')}", output)
        with open(self.path("dump.so"), "rb") as f:
            self.assertEqual(f.read(), payload)

        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                await self.cli("dump", "--address", str(program.address()))

    async def test_missing_arguments(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                await self.cli("deploy")
            with self.assertRaises(SystemExit):
                await self.cli("set-upgrade-authority", "--program-id", "0x1")
            with self.assertRaises(SystemExit):
                await main(["show"])

    def test_retry_budget(self):
        self.assertEqual(retry_budget(2, 6), RetryBudget(max_resigns=5, max_attempts=3))
        with self.assertRaises(ValueError):
            retry_budget(0, 0)


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:]))
