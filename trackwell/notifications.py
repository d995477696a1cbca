from __future__ import annotations

import logging
import re
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta
from threading import RLock

from trackwell.core.config import Settings, get_settings
from trackwell.crm.errors import NotFoundError
from trackwell.crm.schemas import NotificationActor, NotificationItem, NotificationType, Task, TaskStatus, utcnow
from trackwell.directory import UserDirectory
from trackwell.metrics import observe_notification, observe_notification_suppressed
from trackwell.platform.security.context import ActorContext

logger = logging.getLogger("trackwell.notifications")

MENTION_RE = re.compile(r"@([\w-]+)", re.ASCII)
_NO_REMINDER_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})


class NotificationEngine:
    """Per-user inboxes with near-duplicate suppression, mentions and task reminders."""

    def __init__(
        self,
        directory: UserDirectory,
        *,
        inboxes: Mapping[str, Iterable[NotificationItem]] | None = None,
        clock: Callable[[], datetime] = utcnow,
        settings: Settings | None = None,
    ) -> None:
        resolved = settings or get_settings()
        self._directory = directory
        self._clock = clock
        self._dedup_window = timedelta(seconds=resolved.notification_dedup_seconds)
        self._reminder_window = timedelta(seconds=resolved.reminder_dedup_seconds)
        self._inboxes: dict[str, list[NotificationItem]] = defaultdict(list)
        self._lock = RLock()
        for user_id, items in (inboxes or {}).items():
            self._inboxes[user_id].extend(items)

    def notify(
        self,
        target_user_id: str | None,
        notification_type: NotificationType,
        title: str,
        message: str,
        link: str | None = None,
        actor: ActorContext | None = None,
    ) -> NotificationItem | None:
        """Deliver one notification, or return ``None`` when it is a near duplicate."""

        if not target_user_id:
            return None

        now = self._clock()
        actor_ref = NotificationActor(id=actor.user_id, name=actor.name) if actor is not None else None
        actor_id = actor_ref.id if actor_ref is not None else None

        with self._lock:
            inbox = self._inboxes[target_user_id]
            for existing in inbox:
                existing_actor_id = existing.actor.id if existing.actor is not None else None
                if (
                    existing.type == notification_type
                    and existing.title == title
                    and existing.message == message
                    and existing.link == link
                    and existing_actor_id == actor_id
                    and now - existing.timestamp < self._dedup_window
                ):
                    observe_notification_suppressed(notification_type.value)
                    logger.debug(
                        "notification.suppressed",
                        extra={"notification_type": notification_type.value, "target_user_id": target_user_id},
                    )
                    return None

            item = NotificationItem(
                user_id=target_user_id,
                timestamp=now,
                type=notification_type,
                title=title,
                message=message,
                link=link,
                actor=actor_ref,
            )
            inbox.append(item)

        observe_notification(notification_type.value)
        logger.info(
            "notification.sent",
            extra={"notification_type": notification_type.value, "target_user_id": target_user_id},
        )
        return item.model_copy(deep=True)

    def notify_mentions(
        self,
        notes: str | None,
        actor: ActorContext | None,
        entity_label: str,
        entity_name: str,
        link: str,
    ) -> list[NotificationItem]:
        if not notes or actor is None:
            return []

        mentioned: list[str] = []
        for token in MENTION_RE.findall(notes):
            user = self._directory.resolve_mention(token)
            if user is None:
                logger.debug("mention.unresolved", extra={"actor_id": actor.user_id})
                continue
            if user.id == actor.user_id or user.id in mentioned:
                continue
            mentioned.append(user.id)

        delivered: list[NotificationItem] = []
        for user_id in mentioned:
            item = self.notify(
                user_id,
                NotificationType.MENTION,
                f"You were mentioned in {entity_label}: {entity_name}",
                f'{actor.name} mentioned you in the notes of {entity_label.lower()} "{entity_name}".',
                link,
                actor,
            )
            if item is not None:
                delivered.append(item)
        return delivered

    def remind_if_due(
        self,
        task: Task,
        assignee_id: str | None,
        link: str,
        actor: ActorContext | None = None,
    ) -> NotificationItem | None:
        if not assignee_id or task.due_date is None or task.status in _NO_REMINDER_STATUSES:
            return None

        now = self._clock()
        today = now.date()
        if task.due_date == today:
            message = f'Task "{task.title}" is due today.'
        elif task.due_date == today + timedelta(days=1):
            message = f'Task "{task.title}" is due tomorrow.'
        else:
            return None

        with self._lock:
            recent = any(
                item.type == NotificationType.REMINDER
                and item.link == link
                and now - item.timestamp < self._reminder_window
                for item in self._inboxes.get(assignee_id, [])
            )
            if recent:
                observe_notification_suppressed(NotificationType.REMINDER.value)
                return None
            return self.notify(
                assignee_id,
                NotificationType.REMINDER,
                f"Task Reminder: {task.title}",
                message,
                link,
                actor,
            )

    def list_for_user(self, user_id: str, *, unread_only: bool = False) -> list[NotificationItem]:
        with self._lock:
            items = [item.model_copy(deep=True) for item in reversed(self._inboxes.get(user_id, []))]
        if unread_only:
            items = [item for item in items if not item.is_read]
        return sorted(items, key=lambda item: item.timestamp, reverse=True)

    def unread_count(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for item in self._inboxes.get(user_id, []) if not item.is_read)

    def mark_read(self, user_id: str, notification_id: str) -> NotificationItem:
        with self._lock:
            for item in self._inboxes.get(user_id, []):
                if item.id == notification_id:
                    item.is_read = True
                    return item.model_copy(deep=True)
        raise NotFoundError("Notification", notification_id)

    def mark_all_read(self, user_id: str) -> int:
        changed = 0
        with self._lock:
            for item in self._inboxes.get(user_id, []):
                if not item.is_read:
                    item.is_read = True
                    changed += 1
        return changed

    def snapshot(self) -> dict[str, list[NotificationItem]]:
        with self._lock:
            return {user_id: [item.model_copy(deep=True) for item in items] for user_id, items in self._inboxes.items()}
