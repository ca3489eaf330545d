import asyncio
import sys
import os
import uuid

# Add project root/backend to path
sys.path.append(os.path.join(os.getcwd(), "backend"))

from deploy_console.core.config import get_settings
from deploy_console.services.ledger import DeploymentLedger


async def verify():
    print("Starting ledger verification...")

    # Settings are loaded from the environment / .env
    settings = get_settings()
    if not settings.DATABASE_URL:
        print("FAILURE: DATABASE_URL is not set; the ledger is disabled.")
        sys.exit(1)

    ledger = DeploymentLedger.from_settings(settings)
    deployment_id = f"verify-{uuid.uuid4().hex[:8]}"

    try:
        # 1. Record a short run with one step
        await ledger.start_run(deployment_id, steps=["create-site"])
        await ledger.log_step(deployment_id, "create-site", "Initiate Site Creation")
        await ledger.finish_step(deployment_id, "create-site", "completed", output="verification")
        await ledger.finish_run(deployment_id, "completed")
        print(f"Recorded run {deployment_id}")

        # 2. Read it back
        run = await ledger.run_details(deployment_id)
    finally:
        await ledger.dispose()

    if run is not None and run.status == "completed" and len(run.steps) == 1:
        print("SUCCESS: Ledger persistence verified.")
    else:
        print("FAILURE: Run was not persisted. Have the migrations been applied (alembic upgrade head)?")
        sys.exit(1)

if __name__ == "__main__":
    asyncio.run(verify())
