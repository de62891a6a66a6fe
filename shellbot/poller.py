from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from .dispatcher import MessageDispatcher
from .schemas import TelegramUpdate
from .telegram import TelegramAPI, TelegramError, inbound_from_update

logger = logging.getLogger(__name__)


class UpdatePoller:
    """Long-polls getUpdates and hands every message to the dispatcher."""

    def __init__(
        self,
        *,
        api: TelegramAPI,
        dispatcher: MessageDispatcher,
        poll_timeout_seconds: int,
        error_backoff_seconds: float = 5.0,
    ) -> None:
        self.api = api
        self.dispatcher = dispatcher
        self.poll_timeout_seconds = max(1, poll_timeout_seconds)
        self.error_backoff_seconds = error_backoff_seconds
        self._offset = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _poll_loop(self) -> None:
        try:
            await asyncio.to_thread(self.api.delete_webhook, drop_pending_updates=False)
        except TelegramError as exc:
            logger.warning("Could not clear webhook before polling error=%s", exc)

        logger.info("Polling for updates timeout=%ss", self.poll_timeout_seconds)
        try:
            while True:
                try:
                    updates = await asyncio.to_thread(
                        self.api.get_updates,
                        offset=self._offset,
                        timeout_seconds=self.poll_timeout_seconds,
                    )
                    self.handle_updates(updates)
                except TelegramError as exc:
                    logger.warning("getUpdates failed error=%s", exc)
                    await asyncio.sleep(self.error_backoff_seconds)
                except Exception:
                    logger.exception("Polling failed; retrying in %ss", self.error_backoff_seconds)
                    await asyncio.sleep(self.error_backoff_seconds)
        except asyncio.CancelledError:
            return

    def handle_updates(self, updates: list[dict]) -> int:
        accepted = 0
        for raw in updates:
            update_id = raw.get("update_id")
            if isinstance(update_id, int):
                self._offset = max(self._offset, update_id + 1)
            try:
                update = TelegramUpdate.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping malformed update update_id=%s error=%s", update_id, exc)
                continue
            message = inbound_from_update(update)
            if message is not None and self.dispatcher.accept(message):
                accepted += 1
        return accepted
