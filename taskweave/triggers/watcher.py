"""Polling file watcher that starts workflows when files appear or change."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Pattern, Tuple

from ..contracts import FileWatcherRegistration, WorkflowInput
from ..errors import FileWatcherError

logger = logging.getLogger(__name__)

Launcher = Callable[[str, WorkflowInput], Awaitable[str]]
ErrorCallback = Callable[[FileWatcherRegistration, Exception], None]
Snapshot = Dict[str, Tuple[int, int]]

CREATED = "created"
MODIFIED = "modified"


def _compile(pattern: Optional[str], label: str) -> Optional[Pattern[str]]:
    if pattern is None:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise FileWatcherError(f"Invalid {label} '{pattern}': {exc}") from exc


@dataclass
class _Watch:
    registration: FileWatcherRegistration
    root: Path
    file_regex: Optional[Pattern[str]]
    ignore_regex: Optional[Pattern[str]]
    snapshot: Snapshot = field(default_factory=dict)
    pending: Dict[str, Tuple[str, asyncio.Task]] = field(default_factory=dict)
    task: Optional[asyncio.Task] = None

    def wants(self, relative: str) -> bool:
        if self.file_regex is not None and not self.file_regex.search(relative):
            return False
        if self.ignore_regex is not None and self.ignore_regex.search(relative):
            return False
        return True


class FileWatcher:
    """Poll directories and launch a workflow for each new or modified file.

    Events for the same file inside the ``debounce`` window (seconds)
    collapse into one launch, fired once the file has been quiet for the
    whole window.
    """

    def __init__(
        self,
        launcher: Launcher,
        *,
        poll_interval: float = 1.0,
        debounce: float = 0.5,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._launcher = launcher
        self.poll_interval = poll_interval
        self.debounce = debounce
        self._on_error = on_error
        self._watches: Dict[str, _Watch] = {}

    # ------------------------------------------------------------------
    def add_file_watcher(
        self,
        workflow_id: str,
        path: str,
        recursive: bool = False,
        file_pattern: Optional[str] = None,
        ignore_pattern: Optional[str] = None,
        *,
        start: bool = True,
    ) -> str:
        watch = _Watch(
            registration=FileWatcherRegistration(
                id=f"watch_{uuid.uuid4().hex[:12]}",
                workflow_id=workflow_id,
                path=path,
                recursive=recursive,
                file_pattern=file_pattern,
                ignore_pattern=ignore_pattern,
            ),
            root=Path(path),
            file_regex=_compile(file_pattern, "file pattern"),
            ignore_regex=_compile(ignore_pattern, "ignore pattern"),
        )
        if not watch.root.exists():
            raise FileWatcherError(f"Watch path does not exist: {path}")
        try:
            watch.snapshot = self._scan(watch)
        except OSError as exc:
            raise FileWatcherError(f"Cannot read watch path {path}: {exc}") from exc

        self._watches[watch.registration.id] = watch
        if start:
            watch.task = asyncio.get_running_loop().create_task(
                self._poll_loop(watch), name=f"taskweave-{watch.registration.id}"
            )
        logger.info(f"Watching {path} for workflow {workflow_id} ({watch.registration.id})")
        return watch.registration.id

    def remove_file_watcher(self, watcher_id: str) -> bool:
        watch = self._watches.pop(watcher_id, None)
        if watch is None:
            return False
        if watch.task is not None:
            watch.task.cancel()
        for _, task in watch.pending.values():
            task.cancel()
        watch.pending.clear()
        logger.info(f"Removed file watcher {watcher_id}")
        return True

    def remove_watchers_for(self, workflow_id: str) -> int:
        ids = [w_id for w_id, w in self._watches.items() if w.registration.workflow_id == workflow_id]
        for watcher_id in ids:
            self.remove_file_watcher(watcher_id)
        return len(ids)

    def list_file_watchers(self) -> List[FileWatcherRegistration]:
        return [w.registration.model_copy() for w in self._watches.values()]

    async def shutdown(self) -> None:
        tasks: List[asyncio.Task] = []
        for watch in self._watches.values():
            if watch.task is not None:
                tasks.append(watch.task)
            tasks.extend(task for _, task in watch.pending.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._watches.clear()

    async def drain(self) -> None:
        """Wait until every debounced launch has fired."""
        while True:
            tasks = [t for w in self._watches.values() for _, t in w.pending.values()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    def _scan(self, watch: _Watch) -> Snapshot:
        root = watch.root
        if root.is_file():
            stat = root.stat()
            return {root.name: (stat.st_mtime_ns, stat.st_size)}

        snapshot: Snapshot = {}
        if watch.registration.recursive:
            def raise_error(exc: OSError) -> None:
                raise exc

            walker = os.walk(root, onerror=raise_error)
        else:
            with os.scandir(root) as entries:
                files = [e.name for e in entries if e.is_file()]
            walker = [(str(root), [], files)]

        for dirpath, _dirnames, filenames in walker:
            for name in filenames:
                full = Path(dirpath) / name
                relative = full.relative_to(root).as_posix()
                if not watch.wants(relative):
                    continue
                try:
                    stat = full.stat()
                except FileNotFoundError:
                    continue
                snapshot[relative] = (stat.st_mtime_ns, stat.st_size)
        return snapshot

    async def poll_once(self, watcher_id: str) -> List[Tuple[str, str]]:
        """Scan one watcher and queue debounced launches for what changed.

        Returns the ``(relative_path, event_type)`` pairs detected.
        """
        watch = self._watches.get(watcher_id)
        if watch is None:
            return []
        registration = watch.registration
        try:
            current = await asyncio.to_thread(self._scan, watch)
        except OSError as exc:
            if registration.active:
                registration.active = False
                registration.last_error = str(exc)
                logger.error(f"File watcher {watcher_id} on {registration.path} failed: {exc}")
                self._report(registration, exc)
            return []

        if not registration.active:
            logger.info(f"File watcher {watcher_id} recovered")
            registration.active = True

        events: List[Tuple[str, str]] = []
        for relative, signature in current.items():
            previous = watch.snapshot.get(relative)
            if previous is None:
                events.append((relative, CREATED))
            elif previous != signature:
                events.append((relative, MODIFIED))
        watch.snapshot = current

        for relative, event_type in events:
            self._debounce(watch, relative, event_type)
        return events

    def _report(self, registration: FileWatcherRegistration, error: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(registration.model_copy(), error)
        except Exception:
            logger.exception("File watcher error callback failed")

    def _debounce(self, watch: _Watch, relative: str, event_type: str) -> None:
        pending = watch.pending.pop(relative, None)
        if pending is not None:
            previous_type, task = pending
            task.cancel()
            # a file created and then modified is still reported as created
            if previous_type == CREATED:
                event_type = CREATED
        task = asyncio.get_running_loop().create_task(
            self._launch_after_quiet(watch, relative, event_type)
        )
        watch.pending[relative] = (event_type, task)

    async def _launch_after_quiet(self, watch: _Watch, relative: str, event_type: str) -> None:
        await asyncio.sleep(self.debounce)
        watch.pending.pop(relative, None)
        registration = watch.registration
        full_path = watch.root if watch.root.is_file() else watch.root / relative
        workflow_input = WorkflowInput(
            files=[str(full_path)],
            context={
                "trigger": "file-watch",
                "event_type": event_type,
                "watch_path": registration.path,
                "filename": relative,
            },
        )
        try:
            execution_id = await self._launcher(registration.workflow_id, workflow_input)
        except Exception:
            logger.exception(f"File watcher {registration.id} failed to start {registration.workflow_id}")
            return
        logger.info(f"{event_type} {relative} started execution {execution_id}")

    async def _poll_loop(self, watch: _Watch) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once(watch.registration.id)
            except Exception:
                logger.exception(f"File watcher {watch.registration.id} poll failed")
