import asyncio
import time
import pytest
from backend.relay.deadline import Completed, TimedOut, run_with_deadline


async def _value(delay, value="done"):
    await asyncio.sleep(delay)
    return value


def test_completed_within_deadline():
    result = asyncio.run(run_with_deadline(_value(0.01), 1.0))
    assert isinstance(result, Completed)
    assert result.value == "done"


def test_timeout_returns_tagged_result_and_cancels():
    async def scenario():
        started = time.time()
        task_holder = {}

        async def slow():
            task_holder["task"] = asyncio.current_task()
            await asyncio.sleep(5)

        result = await run_with_deadline(slow(), 0.05)
        await asyncio.sleep(0.01)
        return result, time.time() - started, task_holder["task"]

    result, elapsed, task = asyncio.run(scenario())
    assert isinstance(result, TimedOut)
    assert result.timeout_s == 0.05
    assert elapsed < 1.0
    assert task.cancelled()


def test_errors_before_deadline_propagate():
    async def boom():
        raise RuntimeError("provider exploded")

    with pytest.raises(RuntimeError, match="provider exploded"):
        asyncio.run(run_with_deadline(boom(), 1.0))
