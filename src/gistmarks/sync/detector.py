"""Background polling for remote changes.

``RemoteChangeDetector`` asks the repository every *interval* seconds
whether the gist moved away from the held ETag and calls
``on_change_detected`` when it did.  Ticks are skipped entirely (the
repository is not even asked) while the conflict dialog is open or a
conflict is waiting for resolution, so the user's decision is never
raced by a fresh sync.

Polling errors are logged and swallowed; the next tick simply tries
again.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from .repository import GistRepository

logger = logging.getLogger(__name__)

Predicate = Callable[[], bool]


class RemoteChangeDetector:
    """Poll a ``GistRepository`` and report remote changes.

    Args:
        repository: Repository to poll.
        on_change_detected: Called (and awaited if it returns a
            coroutine) when the remote changed.
        interval: Seconds between ticks.
        is_conflict_dialog_open: Suppression predicate.
        has_unresolved_conflict: Suppression predicate.
    """

    def __init__(
        self,
        repository: GistRepository,
        on_change_detected: Callable[[], Any],
        interval: float = 10.0,
        is_conflict_dialog_open: Predicate | None = None,
        has_unresolved_conflict: Predicate | None = None,
    ) -> None:
        self.repository = repository
        self.on_change_detected = on_change_detected
        self.interval = interval
        self._is_dialog_open = is_conflict_dialog_open or (lambda: False)
        self._has_unresolved = has_unresolved_conflict or (lambda: False)
        self._task: asyncio.Task | None = None
        self._running = False
        self._checking = asyncio.Lock()

    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start polling.  Calling it while running does nothing."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            "Watching gist %s every %ss", self.repository.gist_id, self.interval
        )

    def stop(self) -> None:
        """Stop polling.  Safe to call repeatedly.

        A check already in flight is allowed to finish; its loop then ends
        even if polling was started again meanwhile.
        """
        if not self._running:
            return
        self._running = False
        if self._task is not None and not self._checking.locked():
            self._task.cancel()
        self._task = None
        logger.info("Stopped watching gist %s", self.repository.gist_id)

    def _suppressed(self) -> bool:
        return self._is_dialog_open() or self._has_unresolved()

    async def check_now(self) -> bool:
        """Run one check immediately.

        Returns:
            True if a change was detected and the callback invoked.
        """
        if self._checking.locked():
            return False
        if self._suppressed():
            logger.debug("Remote check suppressed by pending conflict")
            return False

        async with self._checking:
            try:
                result = await self.repository.has_remote_changes()
            except Exception as exc:
                logger.debug("Remote check failed: %s", exc)
                return False
            if not result.success:
                logger.warning("Remote check failed: %s", result.error)
                return False
            if not result.data:
                return False

            logger.info(
                "Remote change detected on gist %s", self.repository.gist_id
            )
            try:
                outcome = self.on_change_detected()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Remote change handler failed")
            return True

    def _owns_loop(self) -> bool:
        # A loop left over from before stop() must not poll after a restart.
        return self._running and self._task is asyncio.current_task()

    async def _run(self) -> None:
        while self._owns_loop():
            await asyncio.sleep(self.interval)
            if not self._owns_loop():
                break
            await self.check_now()
