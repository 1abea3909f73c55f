#!/usr/bin/env python3
"""
Example 1: Planned Request

Plans a multi-step request, runs independent tasks in parallel and prints
the task table with the final answer.
"""

import asyncio
import os
import sys

from dotenv import load_dotenv

load_dotenv()

if not os.getenv("ANTHROPIC_API_KEY"):
    print("Error: ANTHROPIC_API_KEY not set. Please set it in your .env file.")
    sys.exit(1)


async def planned_request_example():
    """Plan and execute one research request."""
    from agent_task_engine import TaskEngine, create_default_config

    print("=" * 60)
    print("Example 1: Planned Request")
    print("=" * 60)

    config = create_default_config()
    config.execution.parallel = True
    config.execution.max_workers = 3

    request = (
        "Research the trade-offs between SQLite and PostgreSQL for a small web app, "
        "then compute 12 * 31 with the calculator and write a short recommendation"
    )

    async with await TaskEngine.create(config=config) as engine:
        result = await engine.run(request)

    print(f"\nPlan ({len(result.graph.tasks)} tasks): {result.graph.summary}")
    for task in result.graph.tasks:
        after = f" after {task.predecessor}" if task.predecessor else ""
        print(f"  [{task.state.value:7}] {task.id} {task.type.value}{after}: {task.name or task.description[:40]}")

    for task_id, error in result.report.failed.items():
        print(f"  failed {task_id}: {error}")

    print("\n" + "=" * 60)
    print("Answer:")
    print("=" * 60)
    print(result.answer or "(no answer)")
    print(f"\nCompleted in {result.duration_seconds:.2f}s")
    return result


async def main():
    """Main entry point."""
    try:
        await planned_request_example()
        print("\n✓ Example completed successfully!")
    except Exception as e:
        print(f"\n✗ Example failed: {e}")
        raise


if __name__ == "__main__":
    asyncio.run(main())
