# cbots/notifications.py
"""Outbound notification queue.

Ledger code never talks to a notifier directly. It attaches events to the
current unit of work with ``defer``/``notify_account``; once that unit
commits, the events are pushed onto the in-process outbox, and a worker
thread hands them to the configured sinks. A rolled back unit drops its
events. Delivery failures are logged and swallowed.
"""
from __future__ import annotations

import asyncio
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

from sqlalchemy import event
from sqlalchemy.orm import Session

from cbots import models
from cbots.core.config import settings
from cbots.i18n import tf

logger = logging.getLogger(__name__)

_INFO_KEY = "cbots.notifications"


@dataclass(frozen=True)
class NotificationEvent:
    account_handle: str
    title: str
    message: str
    link: Optional[str] = None


class Sink(Protocol):
    def deliver(self, event: NotificationEvent) -> None: ...


class DatabaseSink:
    """Stores notifications as the account's inbox."""

    def deliver(self, event: NotificationEvent) -> None:
        # local import: database imports models, models must not import us
        from cbots.database import db_session

        with db_session() as db:
            db.add(
                models.Notification(
                    account_handle=event.account_handle,
                    title=event.title,
                    message=event.message,
                    link=event.link,
                )
            )


class TelegramSink:
    """Mirrors notifications into a Telegram log channel."""

    def __init__(self, token: str, chat_id: str):
        self.token = token
        self.chat_id = chat_id

    async def _send(self, text: str) -> None:
        from telegram import Bot

        async with Bot(self.token) as bot:
            await bot.send_message(chat_id=self.chat_id, text=text)

    def deliver(self, event: NotificationEvent) -> None:
        text = f"[{event.account_handle}] {event.title}\n{event.message}"
        if event.link:
            text += f"\n{event.link}"
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._send(text))
            return
        # asyncio.run refuses to nest, so send from a fresh thread with its own loop
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="telegram-sink") as pool:
            pool.submit(asyncio.run, self._send(text)).result()


def build_default_sinks() -> List[Sink]:
    sinks: List[Sink] = []
    if settings.NOTIFY_DATABASE:
        sinks.append(DatabaseSink())
    if settings.BOT_TOKEN and settings.LOG_TRANSACTIONS_CHAT_ID:
        sinks.append(TelegramSink(settings.BOT_TOKEN, settings.LOG_TRANSACTIONS_CHAT_ID))
    else:
        logger.info("BOT_TOKEN/LOG_TRANSACTIONS_CHAT_ID missing, Telegram sink disabled")
    return sinks


class NotificationOutbox:
    def __init__(self, sinks: Optional[Iterable[Sink]] = None, maxsize: int = 10000):
        self.sinks: List[Sink] = list(sinks or [])
        self._queue: "queue.Queue[NotificationEvent]" = queue.Queue(maxsize=maxsize)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def publish(self, event: NotificationEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.error("Notification outbox full, dropping event for %s", event.account_handle)

    def _deliver(self, event: NotificationEvent) -> None:
        for sink in self.sinks:
            try:
                sink.deliver(event)
            except Exception:
                logger.exception(
                    "Notification delivery failed (sink=%s, account=%s)",
                    sink.__class__.__name__,
                    event.account_handle,
                )

    def drain(self) -> int:
        """Deliver everything queued right now on the calling thread."""
        delivered = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            self._deliver(event)
            delivered += 1

    def pending(self) -> int:
        return self._queue.qsize()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            self._deliver(event)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="notification-outbox", daemon=True)
        self._thread.start()
        logger.info("Notification outbox started (%d sinks)", len(self.sinks))

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        # flush what is left so shutdown does not lose events
        self.drain()


outbox = NotificationOutbox()


def defer(db: Session, account_handle: str, title: str, message: str, link: Optional[str] = None) -> None:
    db.info.setdefault(_INFO_KEY, []).append(
        NotificationEvent(account_handle=account_handle, title=title, message=message, link=link)
    )


def notify_account(
    db: Session,
    account: models.Account,
    title_key: str,
    body_key: str,
    *,
    link: Optional[str] = None,
    **fmt,
) -> None:
    """Render a notification in the account's language and attach it to ``db``."""
    lang = account.language or settings.DEFAULT_LANGUAGE
    defer(
        db,
        account.handle,
        tf(lang, title_key, **fmt),
        tf(lang, body_key, **fmt),
        link=link,
    )


@event.listens_for(Session, "after_commit")
def _publish_after_commit(session: Session) -> None:
    events = session.info.pop(_INFO_KEY, None)
    if not events:
        return
    for ev in events:
        try:
            outbox.publish(ev)
        except Exception:
            logger.exception("Failed to enqueue notification for %s", ev.account_handle)


@event.listens_for(Session, "after_rollback")
def _discard_after_rollback(session: Session) -> None:
    session.info.pop(_INFO_KEY, None)
