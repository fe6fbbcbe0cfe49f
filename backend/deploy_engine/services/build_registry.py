from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from deploy_engine.services.exceptions import BuildInProgressError
from deploy_engine.services.log_sink import LogSink


class BuildRegistry:
    """Process-local build locks and the log sinks of in-flight builds.

    One instance lives for the whole process (``app.state``); it is the only
    guard against overlapping builds of the same project and is not shared
    across processes.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._building: set[int] = set()
        self._sinks: dict[int, LogSink] = {}

    def try_acquire(self, project_id: int) -> bool:
        with self._guard:
            if project_id in self._building:
                return False
            self._building.add(project_id)
            return True

    def release(self, project_id: int) -> None:
        with self._guard:
            self._building.discard(project_id)

    def is_building(self, project_id: int) -> bool:
        with self._guard:
            return project_id in self._building

    @contextmanager
    def hold(self, project_id: int) -> Iterator[None]:
        """Hold the build lock for the duration of the block or fail fast."""
        if not self.try_acquire(project_id):
            raise BuildInProgressError(project_id)
        try:
            yield
        finally:
            self.release(project_id)

    def attach_sink(self, project_id: int, sink: LogSink) -> None:
        with self._guard:
            self._sinks[project_id] = sink

    def detach_sink(self, project_id: int, sink: LogSink) -> None:
        with self._guard:
            if self._sinks.get(project_id) is sink:
                del self._sinks[project_id]

    def active_sink(self, project_id: int) -> LogSink | None:
        with self._guard:
            return self._sinks.get(project_id)
