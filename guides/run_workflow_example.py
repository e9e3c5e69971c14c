"""Run the sample RFP review workflow on the in-memory queue."""

import asyncio
import json
from pathlib import Path

from taskweave import WorkflowEngine, create_queue_manager, get_definition_store, load_config


async def main():
    config = load_config()
    queue_manager = await create_queue_manager(config)
    definitions = get_definition_store(str(Path(__file__).with_name("workflows.json")))

    async with WorkflowEngine(queue_manager, definitions=definitions, config=config.engine) as engine:
        engine.on_workflow_progress(
            lambda execution: print(f"{execution.id}: {execution.progress}%")
        )
        result = await engine.execute_workflow(
            "rfp-review",
            {"files": ["rfp-2024-017.pdf"], "parameters": {"client": "acme"}},
            {"priority": "high", "waitTimeout": 30},
        )
        print(f"Finished in {result.duration}ms")
        print(json.dumps(result.outputs, indent=2, default=str))


if __name__ == "__main__":
    asyncio.run(main())
