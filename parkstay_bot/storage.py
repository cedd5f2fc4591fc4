"""
Persistence for watches, STQ entries, the queue session and audit records

The engine only depends on the Storage interface. MemoryStorage keeps
everything in process; JsonFileStorage additionally writes a snapshot of
every table to disk after each write so checkpoints survive a crash.

Entities are copied on the way in and on the way out, so callers never
share mutable state with the store. Updates are patches: only the named
fields change, and updating a row that has been deleted returns None.
"""
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Type, TypeVar
from pydantic import BaseModel

from .common.models import (
    Watch,
    SkipTheQueueEntry,
    QueueSession,
    JobLog,
    JobType,
    Notification,
    NotificationChannel,
    NotificationProviderRecord,
    NotificationDeliveryLog,
)
from .common.timing import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class Storage(ABC):
    """Abstract persistence interface used by the engine"""

    # ========================================
    # Watches
    # ========================================

    @abstractmethod
    def add_watch(self, watch: Watch) -> Watch:
        pass

    @abstractmethod
    def get_watch(self, watch_id: int) -> Optional[Watch]:
        pass

    @abstractmethod
    def list_watches(self, active_only: bool = False) -> List[Watch]:
        pass

    @abstractmethod
    def update_watch(self, watch_id: int, **fields) -> Optional[Watch]:
        pass

    @abstractmethod
    def delete_watch(self, watch_id: int) -> bool:
        pass

    # ========================================
    # Skip The Queue entries
    # ========================================

    @abstractmethod
    def add_stq(self, entry: SkipTheQueueEntry) -> SkipTheQueueEntry:
        pass

    @abstractmethod
    def get_stq(self, stq_id: int) -> Optional[SkipTheQueueEntry]:
        pass

    @abstractmethod
    def list_stq(self, active_only: bool = False) -> List[SkipTheQueueEntry]:
        pass

    @abstractmethod
    def update_stq(self, stq_id: int, **fields) -> Optional[SkipTheQueueEntry]:
        pass

    @abstractmethod
    def delete_stq(self, stq_id: int) -> bool:
        pass

    # ========================================
    # Queue session
    # ========================================

    @abstractmethod
    def get_queue_session(self) -> Optional[QueueSession]:
        pass

    @abstractmethod
    def save_queue_session(self, session: QueueSession):
        pass

    @abstractmethod
    def clear_queue_session(self):
        pass

    # ========================================
    # Job logs
    # ========================================

    @abstractmethod
    def add_job_log(self, log: JobLog) -> JobLog:
        pass

    @abstractmethod
    def list_job_logs(
        self,
        job_type: Optional[JobType] = None,
        job_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[JobLog]:
        pass

    @abstractmethod
    def prune_job_logs(self, before: datetime) -> int:
        pass

    # ========================================
    # Notifications
    # ========================================

    @abstractmethod
    def add_notification(self, notification: Notification) -> Notification:
        pass

    @abstractmethod
    def get_notification(self, notification_id: int) -> Optional[Notification]:
        pass

    @abstractmethod
    def list_notifications(self, unread_only: bool = False, limit: Optional[int] = None) -> List[Notification]:
        pass

    @abstractmethod
    def update_notification(self, notification_id: int, **fields) -> Optional[Notification]:
        pass

    @abstractmethod
    def delete_notification(self, notification_id: int) -> bool:
        pass

    @abstractmethod
    def prune_notifications(self, before: datetime) -> int:
        pass

    # ========================================
    # Notification providers and delivery logs
    # ========================================

    @abstractmethod
    def add_provider(self, provider: NotificationProviderRecord) -> NotificationProviderRecord:
        pass

    @abstractmethod
    def list_providers(self) -> List[NotificationProviderRecord]:
        pass

    @abstractmethod
    def get_provider(self, channel: NotificationChannel) -> Optional[NotificationProviderRecord]:
        pass

    @abstractmethod
    def update_provider(self, provider_id: int, **fields) -> Optional[NotificationProviderRecord]:
        pass

    @abstractmethod
    def add_delivery_log(self, log: NotificationDeliveryLog) -> NotificationDeliveryLog:
        pass

    @abstractmethod
    def list_delivery_logs(self, notification_id: Optional[int] = None) -> List[NotificationDeliveryLog]:
        pass


class MemoryStorage(Storage):
    """Dictionary-backed storage, the default for tests"""

    TABLES: Dict[str, Type[BaseModel]] = {
        "watches": Watch,
        "stq": SkipTheQueueEntry,
        "job_logs": JobLog,
        "notifications": Notification,
        "providers": NotificationProviderRecord,
        "delivery_logs": NotificationDeliveryLog,
    }

    def __init__(self):
        self._tables: Dict[str, Dict[int, BaseModel]] = {name: {} for name in self.TABLES}
        self._next_ids: Dict[str, int] = {name: 1 for name in self.TABLES}
        self._queue_session: Optional[QueueSession] = None

    def _commit(self):
        """Hook called after every write"""
        pass

    # ----------------------------------------
    # Generic table helpers
    # ----------------------------------------

    def _insert(self, table: str, item: T) -> T:
        new_id = self._next_ids[table]
        self._next_ids[table] = new_id + 1
        stored = item.model_copy(update={"id": new_id}, deep=True)
        self._tables[table][new_id] = stored
        self._commit()
        return stored.model_copy(deep=True)

    def _get(self, table: str, item_id: int):
        item = self._tables[table].get(item_id)
        return item.model_copy(deep=True) if item is not None else None

    def _all(self, table: str) -> list:
        return [
            item.model_copy(deep=True)
            for _, item in sorted(self._tables[table].items())
        ]

    def _update(self, table: str, item_id: int, fields: dict):
        current = self._tables[table].get(item_id)
        if current is None:
            return None
        if "updated_at" in type(current).model_fields and "updated_at" not in fields:
            fields = {**fields, "updated_at": utcnow()}
        updated = current.model_copy(update=fields, deep=True)
        self._tables[table][item_id] = updated
        self._commit()
        return updated.model_copy(deep=True)

    def _delete(self, table: str, item_id: int) -> bool:
        if self._tables[table].pop(item_id, None) is None:
            return False
        self._commit()
        return True

    def _prune(self, table: str, before: datetime) -> int:
        stale = [i for i, item in self._tables[table].items() if item.created_at < before]
        for item_id in stale:
            del self._tables[table][item_id]
        if stale:
            self._commit()
        return len(stale)

    # ----------------------------------------
    # Watches
    # ----------------------------------------

    def add_watch(self, watch: Watch) -> Watch:
        return self._insert("watches", watch)

    def get_watch(self, watch_id: int) -> Optional[Watch]:
        return self._get("watches", watch_id)

    def list_watches(self, active_only: bool = False) -> List[Watch]:
        watches = self._all("watches")
        if active_only:
            watches = [w for w in watches if w.is_active]
        return watches

    def update_watch(self, watch_id: int, **fields) -> Optional[Watch]:
        return self._update("watches", watch_id, fields)

    def delete_watch(self, watch_id: int) -> bool:
        return self._delete("watches", watch_id)

    # ----------------------------------------
    # STQ entries
    # ----------------------------------------

    def add_stq(self, entry: SkipTheQueueEntry) -> SkipTheQueueEntry:
        return self._insert("stq", entry)

    def get_stq(self, stq_id: int) -> Optional[SkipTheQueueEntry]:
        return self._get("stq", stq_id)

    def list_stq(self, active_only: bool = False) -> List[SkipTheQueueEntry]:
        entries = self._all("stq")
        if active_only:
            entries = [e for e in entries if e.is_active]
        return entries

    def update_stq(self, stq_id: int, **fields) -> Optional[SkipTheQueueEntry]:
        return self._update("stq", stq_id, fields)

    def delete_stq(self, stq_id: int) -> bool:
        return self._delete("stq", stq_id)

    # ----------------------------------------
    # Queue session
    # ----------------------------------------

    def get_queue_session(self) -> Optional[QueueSession]:
        if self._queue_session is None:
            return None
        return self._queue_session.model_copy()

    def save_queue_session(self, session: QueueSession):
        self._queue_session = session.model_copy()
        self._commit()

    def clear_queue_session(self):
        self._queue_session = None
        self._commit()

    # ----------------------------------------
    # Job logs
    # ----------------------------------------

    def add_job_log(self, log: JobLog) -> JobLog:
        return self._insert("job_logs", log)

    def list_job_logs(
        self,
        job_type: Optional[JobType] = None,
        job_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[JobLog]:
        logs = [
            log for log in self._all("job_logs")
            if (job_type is None or log.job_type == job_type)
            and (job_id is None or log.job_id == job_id)
        ]
        logs.sort(key=lambda log: (log.created_at, log.id), reverse=True)
        return logs[:limit] if limit else logs

    def prune_job_logs(self, before: datetime) -> int:
        return self._prune("job_logs", before)

    # ----------------------------------------
    # Notifications
    # ----------------------------------------

    def add_notification(self, notification: Notification) -> Notification:
        return self._insert("notifications", notification)

    def get_notification(self, notification_id: int) -> Optional[Notification]:
        return self._get("notifications", notification_id)

    def list_notifications(self, unread_only: bool = False, limit: Optional[int] = None) -> List[Notification]:
        items = self._all("notifications")
        if unread_only:
            items = [n for n in items if not n.is_read]
        items.sort(key=lambda n: (n.created_at, n.id), reverse=True)
        return items[:limit] if limit else items

    def update_notification(self, notification_id: int, **fields) -> Optional[Notification]:
        return self._update("notifications", notification_id, fields)

    def delete_notification(self, notification_id: int) -> bool:
        return self._delete("notifications", notification_id)

    def prune_notifications(self, before: datetime) -> int:
        return self._prune("notifications", before)

    # ----------------------------------------
    # Providers and delivery logs
    # ----------------------------------------

    def add_provider(self, provider: NotificationProviderRecord) -> NotificationProviderRecord:
        return self._insert("providers", provider)

    def list_providers(self) -> List[NotificationProviderRecord]:
        return self._all("providers")

    def get_provider(self, channel: NotificationChannel) -> Optional[NotificationProviderRecord]:
        for provider in self._all("providers"):
            if provider.channel == channel:
                return provider
        return None

    def update_provider(self, provider_id: int, **fields) -> Optional[NotificationProviderRecord]:
        return self._update("providers", provider_id, fields)

    def add_delivery_log(self, log: NotificationDeliveryLog) -> NotificationDeliveryLog:
        return self._insert("delivery_logs", log)

    def list_delivery_logs(self, notification_id: Optional[int] = None) -> List[NotificationDeliveryLog]:
        logs = self._all("delivery_logs")
        if notification_id is not None:
            logs = [log for log in logs if log.notification_id == notification_id]
        return logs


class JsonFileStorage(MemoryStorage):
    """
    MemoryStorage that snapshots itself to a JSON file after every write.

    The snapshot is written to a temporary file and moved into place, so a
    crash leaves either the old or the new snapshot, never a partial one.
    Write failures propagate: losing a checkpoint silently is worse than
    stopping.
    """

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path)
        self._loading = False
        self.load()

    def load(self) -> bool:
        """Load the snapshot from disk if one exists"""
        if not self.path.exists():
            return False

        with open(self.path) as f:
            data = json.load(f)

        self._loading = True
        try:
            for table, model in self.TABLES.items():
                rows = data.get("tables", {}).get(table, [])
                self._tables[table] = {row["id"]: model(**row) for row in rows}
                self._next_ids[table] = data.get("next_ids", {}).get(
                    table, max(self._tables[table], default=0) + 1
                )
            session = data.get("queue_session")
            self._queue_session = QueueSession(**session) if session else None
        finally:
            self._loading = False

        logger.info(f"Storage loaded from {self.path}")
        return True

    def _commit(self):
        if self._loading:
            return

        data = {
            "tables": {
                table: [item.model_dump(mode="json") for _, item in sorted(rows.items())]
                for table, rows in self._tables.items()
            },
            "next_ids": self._next_ids,
            "queue_session": (
                self._queue_session.model_dump(mode="json") if self._queue_session else None
            ),
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, 'w') as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_path, self.path)
        logger.debug(f"Storage saved to {self.path}")


def create_storage(path: Optional[str]) -> Storage:
    """JsonFileStorage when a path is configured, MemoryStorage otherwise"""
    if path:
        return JsonFileStorage(path)
    return MemoryStorage()
