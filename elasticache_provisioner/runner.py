"""Bounded-concurrency runner for wait-until-ready/deleted actions."""

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from elasticache_provisioner.constants import DEFAULT_MAX_WORKERS

logger = logging.getLogger(__name__)


@dataclass
class WaitTask:
    """An independent blocking wait plus an optional completion hook.

    ``action`` runs on a worker thread. ``on_success`` runs on the thread that
    called :func:`run_wait_tasks`, so it may safely mutate shared state.
    """

    description: str
    action: Callable[[], None]
    on_success: Optional[Callable[[], None]] = None


def run_wait_tasks(tasks: List[WaitTask], max_workers: int = DEFAULT_MAX_WORKERS) -> None:
    """Run wait tasks in parallel and re-raise the first failure.

    After a failure, tasks that have not started yet are cancelled while
    running ones are drained (their ``on_success`` hooks still apply).

    Args:
        tasks: Wait tasks to execute
        max_workers: Upper bound on concurrently running tasks

    Raises:
        Exception: The first exception raised by any task or completion hook
    """
    if not tasks:
        return

    logger.info(f"Running {len(tasks)} wait task(s) with up to {max_workers} worker(s)")
    first_error: Optional[BaseException] = None

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        future_to_task: Dict[Future, WaitTask] = {
            executor.submit(task.action): task for task in tasks
        }

        for future in as_completed(future_to_task):
            task = future_to_task[future]
            if future.cancelled():
                continue

            error = future.exception()
            if error is not None:
                logger.error(f"Wait task failed: {task.description}: {error}")
                if first_error is None:
                    first_error = error
                    for pending in future_to_task:
                        pending.cancel()
                continue

            logger.debug(f"Wait task completed: {task.description}")
            if task.on_success is None:
                continue
            try:
                task.on_success()
            except Exception as e:
                if first_error is not None:
                    logger.error(f"Completion hook failed after an earlier failure: {task.description}: {e}")
                    continue
                logger.error(f"Completion hook failed: {task.description}: {e}")
                first_error = e
                for pending in future_to_task:
                    pending.cancel()

    if first_error is not None:
        raise first_error
