"""
studysphere.db.room_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

自习室持久化仓库：封装 MongoDB ``rooms`` 集合的增查改操作。

每个房间一个文档，以业务字段 ``id`` 作为唯一键（而非 ``_id``），
保证房间标识在重启前后保持稳定。驱动层异常统一包装为 ``PersistenceError``。
"""
from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any, TypedDict

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from studysphere.core.errors import PersistenceError
from studysphere.core.logging import get_logger

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "rooms"
# 查询时隐藏 MongoDB 内部主键
_PROJECTION = {"_id": 0}


class RoomDocument(TypedDict):
    """代表 MongoDB 中 rooms 集合的单条记录"""
    id: str
    name: str
    topic: str
    notes: str
    timer: int
    targets: list[str]
    created_at: datetime
    updated_at: datetime


class RoomRepository:
    """自习室文档持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._collection.create_index("id", unique=True, name="idx_room_id")
        self._indexes_created = True
        logger.debug("rooms 索引已就绪")

    async def find_room(self, room_id: str) -> RoomDocument | None:
        """按房间 ID 查询单个房间，不存在时返回 ``None``。"""
        try:
            await self._ensure_indexes()
            return await self._collection.find_one({"id": room_id}, _PROJECTION)
        except PyMongoError as e:
            raise PersistenceError("find_room", e) from e

    async def insert_room(self, doc: RoomDocument) -> None:
        """写入一个新房间文档。"""
        try:
            await self._ensure_indexes()
            # insert_one 会原地写入 _id，传副本避免污染调用方的字典
            await self._collection.insert_one(dict(doc))
        except PyMongoError as e:
            raise PersistenceError("insert_room", e) from e

    async def insert_rooms(self, docs: Iterable[RoomDocument]) -> None:
        """批量写入房间文档（启动时写入默认房间用）。"""
        try:
            await self._ensure_indexes()
            await self._collection.insert_many([dict(doc) for doc in docs])
        except PyMongoError as e:
            raise PersistenceError("insert_rooms", e) from e

    async def update_room_fields(self, room_id: str, fields: dict[str, Any]) -> bool:
        """局部更新房间字段。

        Args:
            room_id: 房间唯一标识。
            fields: 需要 ``$set`` 的字段。

        Returns:
            是否命中了已有房间。
        """
        try:
            result = await self._collection.update_one({"id": room_id}, {"$set": fields})
        except PyMongoError as e:
            raise PersistenceError("update_room_fields", e) from e
        return result.matched_count > 0

    async def list_rooms(self) -> list[RoomDocument]:
        """按创建时间正序列出全部房间。"""
        try:
            cursor = self._collection.find({}, _PROJECTION).sort("created_at", 1)
            return await cursor.to_list(length=None)
        except PyMongoError as e:
            raise PersistenceError("list_rooms", e) from e

    async def count_rooms(self) -> int:
        """房间总数。"""
        try:
            return await self._collection.count_documents({})
        except PyMongoError as e:
            raise PersistenceError("count_rooms", e) from e
