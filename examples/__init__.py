"""
Example scripts for program-deploy.

- deploy_program.py: Deploy a program, upgrade it and make it final
- common.py: Shared configuration

Examples talk to the node named by ``PROGRAM_DEPLOY_RPC_URL`` and pay with the
keypair at ``PROGRAM_DEPLOY_KEYPAIR``::

    python -m examples.deploy_program ./target/deploy/program.so
"""
