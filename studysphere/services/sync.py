"""
studysphere.services.sync
~~~~~~~~~~~~~~~~~~~~~~~~~

共享文档同步器：把笔记 / 计时器 / 学习目标的修改写入 MongoDB，
并广播给房间内除发起者以外的所有成员。

没有冲突合并：同一字段以最后写入者为准。持久化失败只记录日志并体现在
``SyncResult`` 上，内存广播照常进行（可用性优先于持久性）。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, get_args

from studysphere.core.errors import PersistenceError
from studysphere.core.logging import get_logger
from studysphere.db.room_repository import RoomRepository
from studysphere.schemas.study_room import SyncField
from studysphere.services.connection import DeliveryResult
from studysphere.services.presence import PresenceNotifier
from studysphere.services.room_directory import RoomDirectory

logger = get_logger(__name__)

SYNC_FIELDS: frozenset[str] = frozenset(get_args(SyncField))


@dataclass
class SyncResult:
    """一次状态同步的可观测结果。

    Attributes:
        dropped: 房间没有在线会话，修改被整体丢弃。
        persisted: 是否成功写入持久化存储。
        error: 持久化失败时的异常。
        deliveries: 用户 ID → 推送结果。
    """

    dropped: bool = False
    persisted: bool = False
    error: PersistenceError | None = None
    deliveries: dict[str, DeliveryResult] = field(default_factory=dict)

    @property
    def delivered_count(self) -> int:
        return sum(1 for r in self.deliveries.values() if r is DeliveryResult.DELIVERED)


class BroadcastSynchronizer:
    """共享文档的写入 + 扇出。"""

    def __init__(
        self,
        repo: RoomRepository,
        directory: RoomDirectory,
        notifier: PresenceNotifier,
    ) -> None:
        self.repo = repo
        self.directory = directory
        self.notifier = notifier

    async def apply_update(
        self,
        room_id: str,
        field_name: SyncField,
        value: Any,
        origin_user_id: str,
    ) -> SyncResult:
        """持久化 ``{field_name: value}`` 并推送 ``<field_name>-update`` 事件。

        Args:
            room_id: 房间唯一标识。
            field_name: ``notes`` / ``timer`` / ``targets`` 之一。
            value: 新值，原样写库并原样广播。
            origin_user_id: 发起修改的用户，不会收到自己的修改。
        """
        if field_name not in SYNC_FIELDS:
            raise ValueError(f"unsupported sync field: {field_name}")

        if self.directory.get(room_id) is None:
            logger.debug("房间无在线会话，丢弃修改 | room=%s | field=%s", room_id, field_name)
            return SyncResult(dropped=True)

        result = SyncResult()
        try:
            await self.repo.update_room_fields(
                room_id,
                {field_name: value, "updated_at": datetime.now(timezone.utc)},
            )
            result.persisted = True
        except PersistenceError as e:
            result.error = e
            logger.error(
                "共享文档持久化失败，继续广播 | room=%s | field=%s | err=%s",
                room_id, field_name, e.cause, exc_info=True,
            )

        result.deliveries = await self.notifier.notify_room(
            room_id,
            f"{field_name}-update",
            value,
            exclude_user_id=origin_user_id,
        )
        return result
