"""
studysphere.services.presence
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

在线状态通知器：房间内扇出事件、全站广播，以及房间在线人数的发布。

找不到连接的成员会被跳过，推送失败只体现在返回的 ``DeliveryResult`` 中。
"""
from __future__ import annotations

import asyncio
from typing import Any

from studysphere.core.logging import get_logger
from studysphere.services.connection import ConnectionRegistry, DeliveryResult
from studysphere.services.room_directory import RoomDirectory

logger = get_logger(__name__)


class PresenceNotifier:
    """房间与全站范围的事件扇出工具。

    Attributes:
        registry: 连接注册表。
        directory: 房间目录。
    """

    def __init__(self, registry: ConnectionRegistry, directory: RoomDirectory) -> None:
        self.registry = registry
        self.directory = directory

    async def send_to_user(self, user_id: str, event: str, data: Any = None) -> DeliveryResult:
        """向指定用户的连接推送事件；连接不存在视为不可达。"""
        connection = self.registry.lookup_by_user(user_id)
        if connection is None:
            return DeliveryResult.PEER_UNREACHABLE
        return await connection.send(event, data)

    async def notify_room(
        self,
        room_id: str,
        event: str,
        data: Any = None,
        exclude_user_id: str | None = None,
    ) -> dict[str, DeliveryResult]:
        """向房间内所有成员（可排除一人）推送事件。

        Returns:
            用户 ID → 推送结果。
        """
        session = self.directory.get(room_id)
        if session is None:
            return {}

        results: dict[str, DeliveryResult] = {}
        targets = []
        for participant in list(session.participants.values()):
            if participant.user_id == exclude_user_id:
                continue
            connection = self.registry.get(participant.connection_id)
            if connection is None:
                results[participant.user_id] = DeliveryResult.PEER_UNREACHABLE
                continue
            targets.append((participant.user_id, connection))

        outcomes = await asyncio.gather(*(conn.send(event, data) for _, conn in targets))
        for (user_id, _), outcome in zip(targets, outcomes):
            results[user_id] = outcome

        unreachable = [uid for uid, r in results.items() if r is DeliveryResult.PEER_UNREACHABLE]
        if unreachable:
            logger.debug("房间推送部分失败 | room=%s | event=%s | 不可达: %s", room_id, event, unreachable)
        return results

    async def broadcast_all(self, event: str, data: Any = None) -> int:
        """向全部在线连接推送事件，返回成功送达的连接数。"""
        connections = self.registry.all()
        outcomes = await asyncio.gather(*(conn.send(event, data) for conn in connections))
        return sum(1 for outcome in outcomes if outcome is DeliveryResult.DELIVERED)

    async def publish_participant_count(self, room_id: str) -> int:
        """向全部连接发布房间当前在线人数（不要求接收方已加入该房间）。"""
        count = self.directory.participant_count(room_id)
        await self.broadcast_all(
            "room-updated-participant-count",
            {"roomId": room_id, "count": count},
        )
        return count
