"""
Registry of in-flight generation tasks.

One entry per key, where a key is ``(deck_id, tier)``, ``(deck_id, "children")``
or ``(card_id, "body")``. A second request for a running key gets the same
task back instead of starting another gateway call.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

TaskKey = Tuple[str, str]


class StaleWriteIgnored(Exception):
    """A task wrote after its key was taken over by a newer task (or a reset)"""
    pass


@dataclass
class GenerationTask:
    key: TaskKey
    token: int
    task: Optional[asyncio.Task] = None
    state: str = "running"  # running | done | failed
    streamed_items: List[Any] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return self.state == "running"


class TaskRegistry:

    def __init__(self):
        self._tasks: Dict[TaskKey, GenerationTask] = {}
        self._tokens = itertools.count(1)

    def get(self, key: TaskKey) -> Optional[GenerationTask]:
        entry = self._tasks.get(key)
        return entry if entry and entry.running else None

    def is_running(self, key: TaskKey) -> bool:
        return self.get(key) is not None

    def is_current(self, key: TaskKey, token: int) -> bool:
        entry = self._tasks.get(key)
        return entry is not None and entry.token == token

    def check_current(self, key: TaskKey, token: int):
        if not self.is_current(key, token):
            raise StaleWriteIgnored(f"Task {token} no longer owns {key}")

    def start(self, key: TaskKey, factory: Callable[[GenerationTask], Awaitable[Any]]) -> GenerationTask:
        """
        Register a task for `key` and schedule `factory(entry)` on the running loop.
        Must not be called while another task for the key is running.
        """
        if self.is_running(key):
            raise RuntimeError(f"Generation already running for {key}")

        entry = GenerationTask(key=key, token=next(self._tokens))
        self._tasks[key] = entry
        entry.task = asyncio.get_running_loop().create_task(self._run(entry, factory))
        logger.debug(f"Started task {entry.token} for {key}")
        return entry

    async def _run(self, entry: GenerationTask, factory):
        try:
            result = await factory(entry)
        except BaseException as e:
            self._finish(entry, "failed", e)
            raise
        self._finish(entry, "done")
        return result

    def _finish(self, entry: GenerationTask, state: str, error: Optional[BaseException] = None):
        entry.state = state
        entry.error = error
        # Drop the entry only if it still owns the key
        if self._tasks.get(entry.key) is entry:
            del self._tasks[entry.key]
        logger.debug(f"Task {entry.token} for {entry.key} finished: {state}")

    async def join(self, entry: GenerationTask):
        """Await a shared task without letting a cancelled caller cancel it"""
        return await asyncio.shield(entry.task)

    def running_keys(self) -> List[TaskKey]:
        return [key for key, entry in self._tasks.items() if entry.running]

    def invalidate_all(self):
        """Forget every entry; late writes from their tasks become stale"""
        if self._tasks:
            logger.info(f"Invalidating {len(self._tasks)} in-flight tasks")
        self._tasks.clear()
