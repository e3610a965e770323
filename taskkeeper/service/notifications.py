from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Set

from taskkeeper.logging import get_logger
from taskkeeper.service.email import EmailService

logger = get_logger(__name__)


class Notifier:
    """Fire-and-forget delivery of account emails.

    Sends run on worker threads so SMTP latency never holds up a response.
    Failures are logged and otherwise ignored; ``drain`` waits for whatever
    is still in flight, which the app does on shutdown.
    """

    def __init__(self, email: EmailService) -> None:
        self.email = email
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def notify_welcome(self, to_email: str, name: str) -> Optional[asyncio.Task]:
        return self._dispatch("welcome", self.email.send_welcome, to_email, name)

    def notify_removed(self, to_email: str, name: str) -> Optional[asyncio.Task]:
        return self._dispatch(
            "account_removed", self.email.send_account_removed, to_email, name
        )

    def _dispatch(
        self, kind: str, send: Callable[..., bool], *args: Any
    ) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop (sync caller): deliver inline, still never raising
            try:
                self._report(kind, send(*args))
            except Exception as exc:
                logger.error(
                    "notification_failed",
                    kind=kind,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            return None
        task = loop.create_task(asyncio.to_thread(send, *args))
        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_done(kind, t))
        return task

    def _on_done(self, kind: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("notification_cancelled", kind=kind)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "notification_failed",
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        self._report(kind, task.result())

    @staticmethod
    def _report(kind: str, delivered: bool) -> None:
        if delivered:
            logger.info("notification_delivered", kind=kind)
        else:
            logger.warning("notification_not_delivered", kind=kind)

    async def drain(self, timeout: float = 5.0) -> None:
        if not self._pending:
            return
        _, still_pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if still_pending:
            logger.warning("notification_drain_timeout", pending=len(still_pending))
