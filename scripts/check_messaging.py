#!/usr/bin/python3

import click
from eth_utils import to_checksum_address

from bridge_deployment.artifacts import ApeProjectArtifacts
from bridge_deployment.chains import RunContext, RunOptions
from bridge_deployment.exceptions import DeploymentError
from bridge_deployment.messaging import MessagingConfigurator
from bridge_deployment.options import environment_option
from bridge_deployment.params import Environment
from bridge_deployment.registry import RegistryStore
from bridge_deployment.runner import DeploymentStepRunner


@click.command()
@environment_option
def cli(environment):
    """Read back the messaging configuration applied for every chain pair."""
    env = Environment.from_name(environment)
    context = RunContext(chains=env.chains, options=RunOptions(resume=True))
    store = RegistryStore(env.registry_filepath)
    configurator = MessagingConfigurator(DeploymentStepRunner(context, ApeProjectArtifacts()))

    mismatches = list()
    for wiring in env.wiring:
        local = env.chains.get(wiring.local)
        remote = env.chains.get(wiring.remote)
        registry = store.load(local.chain_id)
        try:
            applied = configurator.read_config(local, remote, wiring, registry)
        except DeploymentError as e:
            raise click.ClickException(f"Could not read configuration of {wiring}: {e}")

        expected = dict(outbound=wiring.outbound, executor=wiring.executor, inbound=wiring.inbound)
        print(f"\n[{wiring}] {wiring.oapp} at {registry.address(wiring.oapp)}")
        for name, value in applied.items():
            print(f"\t{name}: {value}")
            if value != _normalized(expected[name]):
                print(f"\t(!) expected {expected[name]}")
                mismatches.append(f"{wiring} {name}")

    if mismatches:
        raise click.ClickException(f"Configuration differs for: {', '.join(mismatches)}")
    print("\n(i) Messaging configuration matches the environment file.")


def _normalized(config):
    """Checksums every address so configs compare equal to decoded values."""
    fields = dict()
    for field, value in config._asdict().items():
        if isinstance(value, tuple):
            value = tuple(to_checksum_address(v) for v in value)
        elif isinstance(value, str):
            value = to_checksum_address(value)
        fields[field] = value
    return type(config)(**fields)


if __name__ == "__main__":
    cli()
