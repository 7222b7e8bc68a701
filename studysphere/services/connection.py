"""
studysphere.services.connection
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 连接注册表：维护每条在线连接的会话描述（用户 ID、所在房间、昵称）
以及向该连接推送事件的能力。

所有出站事件都使用统一信封 ``{"event": <事件名>, "data": <载荷>}``。
推送失败不会抛出异常，而是返回 ``DeliveryResult.PEER_UNREACHABLE``，
由调用方决定是否记录日志。
"""
from __future__ import annotations

import enum
import uuid
from typing import Any, Protocol

from studysphere.core.logging import get_logger

logger = get_logger(__name__)


class DeliveryResult(enum.Enum):
    """单次事件推送的结果。"""

    DELIVERED = "delivered"
    PEER_UNREACHABLE = "peer_unreachable"


class JsonSocket(Protocol):
    """连接需要的最小传输能力（FastAPI ``WebSocket`` 天然满足）。"""

    async def send_json(self, data: Any, mode: str = "text") -> None: ...


def new_connection_id() -> str:
    """生成连接 ID，同时用作日志中的 request_id。"""
    return f"ws-{uuid.uuid4().hex[:8]}"


class Connection:
    """一条在线连接的会话描述。

    Attributes:
        connection_id: 连接唯一标识。
        user_id: 连接建立时分配的用户 ID（全局唯一，每条连接只生成一次）。
        websocket: 底层传输对象。
        room_id: 已加入的房间 ID，未加入时为 ``None``。
        display_name: 加入房间时使用的昵称。
        pending_room_id: 正在等待审批的房间 ID。
    """

    def __init__(self, connection_id: str, user_id: str, websocket: JsonSocket) -> None:
        self.connection_id = connection_id
        self.user_id = user_id
        self.websocket = websocket
        self.room_id: str | None = None
        self.display_name: str | None = None
        self.pending_room_id: str | None = None
        self.closed = False

    async def send(self, event: str, data: Any = None) -> DeliveryResult:
        """向远端推送一个事件。"""
        if self.closed:
            return DeliveryResult.PEER_UNREACHABLE
        try:
            await self.websocket.send_json({"event": event, "data": data})
        except Exception as e:
            logger.warning(
                "事件推送失败 | connection=%s | event=%s | err=%s",
                self.connection_id, event, e,
            )
            return DeliveryResult.PEER_UNREACHABLE
        return DeliveryResult.DELIVERED

    def __repr__(self) -> str:
        return f"<Connection {self.connection_id} user={self.user_id} room={self.room_id}>"


class ConnectionRegistry:
    """进程内的连接注册表，由 ``StudySystem`` 独占持有。"""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._by_user: dict[str, str] = {}

    async def register(self, websocket: JsonSocket, connection_id: str | None = None) -> Connection:
        """登记新连接，分配用户 ID 并立即通过 ``user-id-assigned`` 告知对端。"""
        cid = connection_id or new_connection_id()
        while cid in self._connections:
            cid = new_connection_id()

        connection = Connection(cid, str(uuid.uuid4()), websocket)
        self._connections[cid] = connection
        self._by_user[connection.user_id] = cid
        logger.info("连接已登记 | user=%s | 在线连接: %d", connection.user_id, len(self._connections))

        await connection.send("user-id-assigned", connection.user_id)
        return connection

    def attach(self, connection_id: str, room_id: str | None, display_name: str | None) -> None:
        """记录连接所在的房间与昵称；``room_id`` 为 ``None`` 表示离开房间。"""
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        connection.room_id = room_id
        connection.display_name = display_name

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def lookup_by_user(self, user_id: str) -> Connection | None:
        """按用户 ID 查找连接，找不到时返回 ``None``（调用方视为对端不可达）。"""
        connection_id = self._by_user.get(user_id)
        if connection_id is None:
            return None
        return self._connections.get(connection_id)

    def remove(self, connection_id: str) -> Connection | None:
        """注销连接并返回其最后的会话描述。"""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None
        connection.closed = True
        self._by_user.pop(connection.user_id, None)
        logger.info("连接已注销 | user=%s | 在线连接: %d", connection.user_id, len(self._connections))
        return connection

    def all(self) -> list[Connection]:
        """当前全部在线连接的快照。"""
        return list(self._connections.values())

    @property
    def online_count(self) -> int:
        """当前在线连接数。"""
        return len(self._connections)
