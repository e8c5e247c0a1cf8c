#!/usr/bin/python3

import click

from bridge_deployment.options import environment_option
from bridge_deployment.params import Environment
from bridge_deployment.pipeline import verify_chain
from bridge_deployment.registry import RegistryStore
from bridge_deployment.verification import ExplorerVerifier


@click.command()
@environment_option
@click.option(
    "--chain",
    "-c",
    "chain_names",
    help="Chain to verify; all chains of the environment by default.",
    type=click.STRING,
    multiple=True,
)
def cli(environment, chain_names):
    """Verify the deployed contracts of an environment from its registry."""
    env = Environment.from_name(environment)
    store = RegistryStore(env.registry_filepath)
    published = store.chain_ids()

    verifier = ExplorerVerifier()
    for chain_name in chain_names or env.chains.names():
        chain = env.chains.get(chain_name)
        if chain.chain_id not in published:
            raise click.ClickException(
                f"No deployment published for {chain} in '{store.filepath}'"
            )
        registry = store.load(chain.chain_id)
        verified = verify_chain(verifier, chain, registry, env.steps_for(chain.name))
        print(f"[{chain.name}] (i) Verified {len(verified)}/{len(registry)} contract(s).")


if __name__ == "__main__":
    cli()
