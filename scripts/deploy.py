#!/usr/bin/python3

from concurrent.futures import ThreadPoolExecutor

import click

from bridge_deployment.artifacts import ApeProjectArtifacts, HardhatArtifacts
from bridge_deployment.chains import RunContext, RunOptions
from bridge_deployment.confirm import _confirm_environment
from bridge_deployment.exceptions import DeploymentError
from bridge_deployment.options import (
    artifacts_dir_option,
    autosign_option,
    confirmation_timeout_option,
    environment_option,
    max_in_flight_option,
    max_retries_option,
    resume_option,
    verify_option,
)
from bridge_deployment.params import Environment
from bridge_deployment.pipeline import run_environment
from bridge_deployment.registry import RegistryStore
from bridge_deployment.runner import DeploymentStepRunner
from bridge_deployment.verification import ExplorerVerifier


@click.command()
@environment_option
@resume_option
@verify_option
@confirmation_timeout_option
@max_retries_option
@max_in_flight_option
@autosign_option
@artifacts_dir_option
def cli(
    environment,
    resume,
    verify,
    confirmation_timeout,
    max_retries,
    max_in_flight,
    autosign,
    artifacts_dir,
):
    """Deploy every chain of an environment and wire its messaging pairs."""
    try:
        env = Environment.from_name(environment)
        artifacts = HardhatArtifacts(artifacts_dir) if artifacts_dir else ApeProjectArtifacts()
        env.validate(artifacts)
    except (DeploymentError, ValueError) as e:
        raise click.ClickException(str(e))

    options = RunOptions(
        resume=resume,
        confirmation_timeout=confirmation_timeout,
        max_retry_attempts=max_retries,
        verify=verify,
        max_in_flight=max_in_flight,
        autosign=autosign,
    )
    context = RunContext(chains=env.chains, options=options)
    store = RegistryStore(env.registry_filepath)
    print(
        f"Environment: {env.name}",
        f"Chains: {', '.join(env.chains.names())}",
        f"Registry: {store.filepath}",
        f"Resume: {resume}",
        f"Verify: {verify}",
        sep="\n",
    )
    if not autosign:
        _confirm_environment(env)

    runner = DeploymentStepRunner(context, artifacts)
    verifier = ExplorerVerifier() if verify else None
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(run_environment, context, env, runner, store, verifier)
        try:
            try:
                report = future.result()
            except KeyboardInterrupt:
                print("\n(!) Interrupted; waiting for in-flight transactions to settle...")
                context.cancel()
                report = future.result()
        except (DeploymentError, ValueError) as e:
            raise click.ClickException(str(e))

    if not report.succeeded:
        failures = "\n".join(f"\t{error}" for error in report.errors)
        raise click.ClickException(
            f"Deployment of {env.name} did not complete; re-run with --resume to continue.\n"
            f"{failures}"
        )
    print(f"\n(i) {env.name} deployed and wired with {report.transactions} transaction(s).")


if __name__ == "__main__":
    cli()
