"""Default action executor.

Async actions are awaited on the coordinating event loop; sync actions are
run in a thread pool so that they never block scheduling.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from taskweave._task import Task, is_async_action
from taskweave.build._base import ActionExecutorABC
from taskweave.config import RunContext
from taskweave.exceptions import ActionFailure, ActionTimeout

logger = logging.getLogger(__name__)


class ActionExecutor(ActionExecutorABC):
    """Invokes task actions, one attempt each, honoring per-task timeouts.

    Args:
        max_thread_workers: Maximum concurrent thread pool workers for sync
            actions.
    """

    def __init__(self, max_thread_workers: int = 10) -> None:
        self.max_thread_workers = max_thread_workers
        self._thread_pool: ThreadPoolExecutor | None = None

    async def setup(self) -> None:
        """Initialize worker pool."""
        if self._thread_pool is None:
            self._thread_pool = ThreadPoolExecutor(
                max_workers=self.max_thread_workers,
                thread_name_prefix="taskweave-action",
            )

    async def teardown(self) -> None:
        """Shutdown worker pool."""
        if self._thread_pool:
            # Threads of timed-out sync actions are abandoned, not awaited
            self._thread_pool.shutdown(wait=False, cancel_futures=True)
            self._thread_pool = None

    async def submit(self, task: Task, context: RunContext) -> ActionFailure | None:
        """Invoke the task's action and return its settlement.

        Note: This method never raises for action errors. Cancellation of the
        surrounding asyncio task is propagated.
        """
        if task.action is None:
            return None
        try:
            if task.timeout is None:
                await self._invoke(task, context)
            else:
                await asyncio.wait_for(self._invoke(task, context), task.timeout)
        except asyncio.TimeoutError:
            return ActionTimeout(task.name, task.timeout or 0)
        except ActionFailure as e:
            return e
        except Exception as e:
            logger.debug(f"Action of task '{task.name}' raised", exc_info=True)
            return ActionFailure(task.name, _describe(e))
        return None

    async def _invoke(self, task: Task, context: RunContext) -> None:
        action = task.action
        assert action is not None

        if is_async_action(action):
            await action(context)  # type: ignore[misc]
            return

        assert self._thread_pool is not None, "executor not set up"
        loop = asyncio.get_running_loop()
        result: Any = await loop.run_in_executor(self._thread_pool, action, context)
        # Sync callables returning an awaitable (e.g. functools.partial of a
        # coroutine function)
        if result is not None and hasattr(result, "__await__"):
            await result


def _describe(error: BaseException) -> str:
    message = str(error)
    if not message:
        return type(error).__name__
    return f"{type(error).__name__}: {message}"
