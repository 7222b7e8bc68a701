"""
studysphere.services.signaling
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

信令转发：把建立点对点媒体连接所需的信令原样转交给目标用户。

信令内容对服务端不透明，不做任何解析；目标不在线时直接丢弃，
既不重试也不缓存，发送方也不会收到失败通知。
"""
from __future__ import annotations

from typing import Any

from studysphere.core.logging import get_logger
from studysphere.services.connection import ConnectionRegistry, DeliveryResult

logger = get_logger(__name__)


class SignalingRelay:
    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def relay(self, from_user_id: str, to_user_id: str, payload: Any) -> DeliveryResult:
        """把 ``payload`` 以 ``signal {userId, signal}`` 事件转发给 ``to_user_id``。"""
        target = self.registry.lookup_by_user(to_user_id)
        if target is None:
            logger.debug("信令目标不在线，已丢弃 | from=%s | to=%s", from_user_id, to_user_id)
            return DeliveryResult.PEER_UNREACHABLE
        return await target.send("signal", {"userId": from_user_id, "signal": payload})
