"""
Background deployment runner.

Started detached by the web tier (python -m deploy_console.runner); owns the
status document for the lifetime of one run.

    python -m deploy_console.runner                      # full pipeline
    python -m deploy_console.runner --step get-cred      # one step
    python -m deploy_console.runner --steps a,b --test   # subset, simulated
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from deploy_console.core.config import Settings
from deploy_console.schemas.deployment import DeploymentState
from deploy_console.services.deployment_controller import DeploymentController

logger = logging.getLogger("deploy_console.runner")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the deployment pipeline in the background")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--step", help="Run a single step by key")
    group.add_argument("--steps", help="Comma separated step keys to run, in pipeline order")
    parser.add_argument("--test", action="store_true", help="Simulate every step (demo mode)")
    parser.add_argument("--deployment-id", help="Identifier assigned when the run was triggered")
    return parser


async def _run(controller: DeploymentController, steps: Optional[str], test_mode: bool,
               deployment_id: Optional[str]) -> DeploymentState:
    try:
        return await controller.run_pipeline(steps, test_mode=test_mode, deployment_id=deployment_id)
    finally:
        await controller.ledger.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # stdout/stderr of this process are appended to the deployment log
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    settings = Settings()
    controller = DeploymentController.from_settings(settings)
    steps = args.step or args.steps

    state = asyncio.run(_run(controller, steps, args.test, args.deployment_id))
    logger.info(f"Deployment runner finished: {state.value}")
    return 0 if state == DeploymentState.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
