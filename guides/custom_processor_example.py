"""Replace a built-in step processor with your own handler."""

import asyncio

from taskweave import JobProcessorRegistry, ProcessorInfo, WorkflowEngine, create_queue_manager
from taskweave.queue import JobContext


async def count_words(context: JobContext):
    """Toy document analysis: count words in the provided text."""
    text = context.payload["input"]["parameters"].get("text", "")
    await context.update_progress(50)
    return {"words": len(text.split())}


async def main():
    queue_manager = await create_queue_manager()
    registry = JobProcessorRegistry(queue_manager)
    registry.register_processor(
        ProcessorInfo("document-analysis", "document-processing", count_words)
    )

    async with WorkflowEngine(queue_manager, registry=registry) as engine:
        await engine.create_workflow(
            {
                "id": "word-count",
                "name": "Word count",
                "steps": [
                    {"id": "count", "name": "Count words", "type": "document-analysis"},
                    {
                        "id": "notify",
                        "name": "Notify",
                        "type": "notification",
                        "dependencies": ["count"],
                    },
                ],
            }
        )
        result = await engine.execute_workflow(
            "word-count", {"parameters": {"text": "scope timeline budget"}}
        )
        print(result.outputs["count"])


if __name__ == "__main__":
    asyncio.run(main())
