# rfid_portal/scheduler.py
# -----------------------------------------------------------------------------
# One owner for every background task in the process.
#
# Tasks are registered by name and tagged with a group ("session", "pipeline",
# "dispatch"). Starting a name that is already running replaces the old task,
# so a reconnect can never leave two keep-alive loops behind. A whole group is
# cancelled in one call when the session drops.
# -----------------------------------------------------------------------------

from __future__ import annotations
import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

log = logging.getLogger("portal.scheduler")

Callback = Callable[[], Any]


@dataclass
class _Entry:
    name: str
    group: str
    task: asyncio.Task
    interval_s: Optional[float] = None   # None for one-shot/long-running tasks


class TaskScheduler:
    def __init__(self) -> None:
        self._entries: Dict[str, _Entry] = {}

    # ---------- registration ----------

    def every(self, name: str, interval_s: float, callback: Callback, *,
              group: str = "default", immediate: bool = False) -> asyncio.Task:
        """Run `callback` every `interval_s` seconds until stopped. Replaces a task of the same name."""
        interval = max(0.001, float(interval_s))
        self.stop(name)
        task = asyncio.get_running_loop().create_task(
            self._periodic(name, interval, callback, immediate), name=f"sched:{name}"
        )
        self._track(_Entry(name=name, group=group, task=task, interval_s=interval))
        log.debug("task_started", extra={"task": name, "group": group, "interval_s": interval})
        return task

    def spawn(self, name: str, coro: Awaitable[Any], *, group: str = "default") -> asyncio.Task:
        """Track a one-shot or long-running coroutine under `name`. Replaces a task of the same name."""
        self.stop(name)
        task = asyncio.get_running_loop().create_task(self._guard(name, coro), name=f"sched:{name}")
        self._track(_Entry(name=name, group=group, task=task))
        return task

    def _track(self, entry: _Entry) -> None:
        self._entries[entry.name] = entry

        def _forget(t: asyncio.Task, name: str = entry.name) -> None:
            cur = self._entries.get(name)
            if cur is not None and cur.task is t:
                self._entries.pop(name, None)

        entry.task.add_done_callback(_forget)

    # ---------- cancellation ----------

    def stop(self, name: str) -> bool:
        entry = self._entries.pop(name, None)
        if entry is None:
            return False
        entry.task.cancel()
        log.debug("task_stopped", extra={"task": name, "group": entry.group})
        return True

    def stop_group(self, group: str) -> List[str]:
        names = [e.name for e in self._entries.values() if e.group == group]
        for n in names:
            self.stop(n)
        if names:
            log.info("group_stopped", extra={"group": group, "tasks": names})
        return names

    def stop_all(self) -> List[str]:
        names = list(self._entries)
        for n in names:
            self.stop(n)
        return names

    async def aclose(self) -> None:
        """Cancel everything and wait for the tasks to unwind."""
        tasks = [e.task for e in self._entries.values()]
        self.stop_all()
        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current]
        if not tasks:
            return
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for res in results:
            if isinstance(res, Exception) and not isinstance(res, asyncio.CancelledError):
                log.warning("task_ended_with_error_on_close", extra={"err": repr(res)})

    # ---------- introspection ----------

    def is_running(self, name: str) -> bool:
        entry = self._entries.get(name)
        return bool(entry and not entry.task.done())

    def names(self, group: Optional[str] = None) -> List[str]:
        return sorted(e.name for e in self._entries.values() if group is None or e.group == group)

    # ---------- loops ----------

    async def _periodic(self, name: str, interval: float, callback: Callback, immediate: bool) -> None:
        try:
            if not immediate:
                await asyncio.sleep(interval)
            while True:
                try:
                    res = callback()
                    if inspect.isawaitable(res):
                        await res
                except asyncio.CancelledError:
                    raise
                except Exception:
                    # A failing tick must not kill the timer.
                    log.exception("task_tick_failed", extra={"task": name})
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            return

    async def _guard(self, name: str, coro: Awaitable[Any]) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("task_crashed", extra={"task": name})
            return None
