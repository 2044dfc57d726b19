#!/usr/bin/env python3
"""AWS CDK entrypoint for provisioning the board stacks.

Each stack listed under the ``board:stacks`` context key is composed into a
resource graph, rendered as CloudFormation and synthesized. Identity tokens
and secret handles are read from the ``board:state`` context key; any value
missing there is generated and logged so it can be stored in cdk.json before
the next deployment.
"""
import os

import aws_cdk as cdk
from aws_cdk import Environment
from aws_lambda_powertools import Logger

import common.constants as constants
from common.errors import BoardAppError
from common.identity import IdentityRegistry
from board_app.artifacts import ArtifactPackager
from board_app.board_app_stack import BoardAppStack
from board_app.composer import compose_stack
from board_app.config import StackConfig
from board_app.state import StackState
from board_app.synthesis import to_json

logger = Logger(service=constants.SERVICE_NAME, level=os.getenv("LOG_LEVEL", "INFO").upper())

app = cdk.App()

stacks = app.node.try_get_context(constants.CONTEXT_STACKS_KEY) or {}
persisted_state = app.node.try_get_context(constants.CONTEXT_STATE_KEY) or {}
registry = IdentityRegistry()
packager = ArtifactPackager(constants.ARTIFACT_STAGING_DIR)

states = {}
for stack_name in sorted(stacks):
    try:
        states[stack_name] = StackState.from_dict(stack_name, persisted_state.get(stack_name))
    except BoardAppError:
        logger.exception("Persisted stack state is malformed", stack=stack_name)
        raise

# Persisted tokens are claimed first so no fresh token can take one of them.
try:
    registry.reserve({name: state.identity_token for name, state in states.items()})
except BoardAppError:
    logger.exception("Persisted identity tokens collide")
    raise

for stack_name, config in sorted(stacks.items()):
    state = states[stack_name]
    try:
        config = StackConfig.from_mapping(config, stack_name=stack_name)
        graph = compose_stack(
            stack_name,
            config,
            state=state,
            packager=packager,
            registry=registry,
        )
    except BoardAppError:
        logger.exception("Stack composition failed", stack=stack_name)
        raise

    if graph.state != state:
        logger.warning(
            "Generated new stack state; persist it under the board:state context key",
            fresh=state.is_fresh,
            stack=stack_name,
            state=graph.state.to_dict(),
        )

    graph_path = os.path.join(app.outdir, f"{stack_name}.graph.json")
    os.makedirs(app.outdir, exist_ok=True)
    with open(graph_path, "w") as file:
        file.write(to_json(graph))

    # Availability zones are named after the configured region, so the stack
    # is pinned to it.
    env = Environment(account=os.getenv("CDK_DEFAULT_ACCOUNT"), region=config.region)
    BoardAppStack(app, stack_name, graph, env=env)

app.synth()
