"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures：用内存版房间仓库替代 MongoDB，用记录型假 WebSocket
替代真实连接，使单元测试可在无数据库、无网络环境下快速运行。
"""
from __future__ import annotations

import asyncio
import os
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SEED_DEFAULT_ROOMS", "false")

from studysphere.core.errors import PersistenceError  # noqa: E402
from studysphere.services.study_system import StudySystem, new_room_document  # noqa: E402


# ── 假 WebSocket ──────────────────────────────────────────────────────

class FakeWebSocket:
    """记录所有出站信封的假连接。``fail=True`` 时模拟已断开的对端。"""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Any, mode: str = "text") -> None:
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(data)

    def events(self, name: str) -> list[Any]:
        """返回指定事件的全部载荷（按发送顺序）。"""
        return [m["data"] for m in self.sent if m["event"] == name]

    def event_names(self) -> list[str]:
        return [m["event"] for m in self.sent]

    def clear(self) -> None:
        self.sent.clear()


# ── 内存版房间仓库 ────────────────────────────────────────────────────

class InMemoryRoomRepository:
    """与 ``RoomRepository`` 接口一致的内存实现。

    每个方法都会先 ``await asyncio.sleep(0)`` 让出事件循环，
    模拟真实数据库调用的挂起点，便于测试并发交错。
    """

    def __init__(self, rooms: list[dict] | None = None) -> None:
        self.rooms: dict[str, dict] = {r["id"]: dict(r) for r in rooms or []}
        self.updates: list[tuple[str, dict]] = []
        self.fail_reads = False
        self.fail_writes = False

    def _maybe_fail(self, operation: str, flag: bool) -> None:
        if flag:
            raise PersistenceError(operation, RuntimeError("mongo unavailable"))

    async def find_room(self, room_id: str) -> dict | None:
        await asyncio.sleep(0)
        self._maybe_fail("find_room", self.fail_reads)
        room = self.rooms.get(room_id)
        return dict(room) if room is not None else None

    async def insert_room(self, doc: dict) -> None:
        await asyncio.sleep(0)
        self._maybe_fail("insert_room", self.fail_writes)
        self.rooms[doc["id"]] = dict(doc)

    async def insert_rooms(self, docs: list[dict]) -> None:
        await asyncio.sleep(0)
        self._maybe_fail("insert_rooms", self.fail_writes)
        for doc in docs:
            self.rooms[doc["id"]] = dict(doc)

    async def update_room_fields(self, room_id: str, fields: dict) -> bool:
        await asyncio.sleep(0)
        self.updates.append((room_id, dict(fields)))
        self._maybe_fail("update_room_fields", self.fail_writes)
        if room_id not in self.rooms:
            return False
        self.rooms[room_id].update(fields)
        return True

    async def list_rooms(self) -> list[dict]:
        await asyncio.sleep(0)
        self._maybe_fail("list_rooms", self.fail_reads)
        return [dict(r) for r in self.rooms.values()]

    async def count_rooms(self) -> int:
        await asyncio.sleep(0)
        return len(self.rooms)


# ── Fixtures ──────────────────────────────────────────────────────────

@pytest.fixture()
def repo() -> InMemoryRoomRepository:
    """预置 room-1 / room-2 两个房间的内存仓库。"""
    return InMemoryRoomRepository(
        [
            new_room_document(
                "Math Study Group", "Algebra",
                room_id="room-1", notes="Welcome!", targets=["Review Algebra"],
            ),
            new_room_document("Science Lab", "Physics", room_id="room-2"),
        ],
    )


@pytest.fixture()
def system(repo: InMemoryRoomRepository) -> StudySystem:
    return StudySystem(repo)  # type: ignore[arg-type]


@pytest.fixture()
def connect(system: StudySystem):
    """返回一个协程工厂：登记一条新连接，得到 ``(connection, websocket)``。"""

    async def _connect(fail: bool = False):
        websocket = FakeWebSocket(fail=fail)
        connection = await system.connect(websocket)
        return connection, websocket

    return _connect


@pytest.fixture()
def join(system: StudySystem, connect):
    """返回一个协程工厂：新建连接并加入房间（空房间时直接准入）。"""

    async def _join(username: str, room_id: str = "room-1"):
        connection, websocket = await connect()
        await system.join_room(connection, room_id, username)
        return connection, websocket

    return _join
