"""
studysphere.api.ws
~~~~~~~~~~~~~~~~~~

WebSocket 实时交互接口：自习室的出入、审批、信令与共享文档同步。

提供 ``/ws`` 端点。连接建立后服务端立即推送 ``user-id-assigned``，
之后双方以 ``{"event": ..., "data": ...}`` JSON 信封交换事件。
同一连接上的事件按到达顺序逐个处理；不同连接之间并发执行。
"""
from __future__ import annotations

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from studysphere.core.logging import get_logger, request_id_ctx_var
from studysphere.services.connection import new_connection_id
from studysphere.services.dispatcher import EventDispatcher
from studysphere.services.study_system import StudySystem

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.websocket("/ws")
async def websocket_study_endpoint(websocket: WebSocket) -> None:
    """WebSocket 自习室端点。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    ws_req_id = new_connection_id()
    token = request_id_ctx_var.set(ws_req_id)

    try:
        system: StudySystem = websocket.app.state.study_system
        dispatcher: EventDispatcher = websocket.app.state.event_dispatcher

        await websocket.accept()
        connection = await system.connect(websocket, connection_id=ws_req_id)

        try:
            while True:
                raw: str = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    await connection.send("error", "malformed message")
                    continue
                await dispatcher.dispatch(connection, message)
        except WebSocketDisconnect:
            pass  # 正常断开
        except Exception as e:
            logger.error("WebSocket 接收异常: %s", e, exc_info=True)
        finally:
            await system.disconnect(connection.connection_id)
            dispatcher.forget(connection.connection_id)
    finally:
        request_id_ctx_var.reset(token)
