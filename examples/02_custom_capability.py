#!/usr/bin/env python3
"""
Example 2: Custom Capability

Registers an extra capability and runs a hand-built task graph through the
scheduler, writing the execution ledger to a JSONL file.
"""

import asyncio
import os
import sys

from dotenv import load_dotenv

load_dotenv()

if not os.getenv("ANTHROPIC_API_KEY"):
    print("Error: ANTHROPIC_API_KEY not set. Please set it in your .env file.")
    sys.exit(1)


def build_word_count():
    from agent_task_engine import Capability, CapabilitySchema

    class WordCountCapability(Capability):
        """Counts words in a piece of text."""

        def __init__(self):
            super().__init__(name="word_count", description="Count the words in a text")

        def get_schema(self):
            return CapabilitySchema(
                name=self.name,
                description=self.description,
                parameters={"text": {"type": "string", "description": "Text to count"}},
                required=["text"],
            )

        async def execute(self, **kwargs):
            return {"words": len(kwargs["text"].split())}

    return WordCountCapability()


async def custom_capability_example():
    from agent_task_engine import Task, TaskEngine, TaskState, TaskType, create_default_config

    print("=" * 60)
    print("Example 2: Custom Capability")
    print("=" * 60)

    config = create_default_config()
    config.ledger.backend = "jsonl"
    config.ledger.base_dir = "./records"

    tasks = [
        Task(id="haiku", name="Haiku", description="Write a haiku about autumn rain",
             type=TaskType.PLAIN, state=TaskState.WAIT),
        Task(id="count", name="Count", description="Count words in a fixed sentence",
             process='function: word_count(text="the quick brown fox jumps")',
             type=TaskType.FUNCTION_CALL, state=TaskState.WAIT),
        Task(id="review", name="Review", description="Critique the haiku in one sentence",
             type=TaskType.DELEGATE_CALL, process="agent: Poetry Editor: critique the haiku",
             predecessor="haiku", state=TaskState.WAIT),
    ]

    async with await TaskEngine.create(config=config) as engine:
        engine.registry.register(build_word_count())
        report = await engine.scheduler.execute_batch(tasks, engine.new_context())
        print(f"\nLedger written to {engine.ledger.path}")

    print(f"Waves: {report.waves}")
    for task in tasks:
        print(f"\n--- {task.id} ({task.state.value}) ---")
        print(str(task.result)[:300])
    return report


async def main():
    """Main entry point."""
    try:
        await custom_capability_example()
        print("\n✓ Example completed successfully!")
    except Exception as e:
        print(f"\n✗ Example failed: {e}")
        raise


if __name__ == "__main__":
    asyncio.run(main())
