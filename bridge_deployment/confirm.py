from bridge_deployment.params import Environment


def _continue() -> None:
    """Asks the user to continue."""
    answer = input("Continue Y/N? ")
    if answer.lower().strip() == "n":
        print("Aborting deployment!")
        exit(-1)


def _confirm_environment(environment: Environment) -> None:
    """Prints what is about to be deployed and asks the user to confirm it."""
    for chain in environment.chains:
        steps = environment.steps_for(chain.name)
        print(f"\n[{chain.name}] chain_id={chain.chain_id} eid={chain.eid}")
        print(f"\tDeployer: {chain.deployer}")
        print(f"\tEndpoint: {chain.endpoint}")
        for step in steps:
            print(f"\t{step}")
    for wiring in environment.wiring:
        print(f"\nWiring {wiring} via {wiring.oapp}")
    _continue()
