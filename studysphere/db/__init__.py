"""
studysphere.db
~~~~~~~~~~~~~~

MongoDB 连接管理。

进程内只持有一个 ``AsyncIOMotorClient``：lifespan 启动时 ``connect_mongo()``，
关闭时 ``close_mongo()``。房间数据的读写都经由 ``RoomRepository``，
这里只负责连接本身与健康检查。
"""
from __future__ import annotations

from urllib.parse import urlparse, urlunparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from studysphere.core.config import settings
from studysphere.core.logging import get_logger

logger = get_logger(__name__)

_client: AsyncIOMotorClient | None = None


def mask_uri(uri: str) -> str:
    """隐藏连接串中的密码，只用于日志输出。"""
    parsed = urlparse(uri)
    if not parsed.password:
        return uri
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return urlunparse(parsed._replace(netloc=f"{parsed.username}:***@{host}"))


async def connect_mongo(uri: str | None = None, db_name: str | None = None) -> AsyncIOMotorDatabase:
    """建立连接并 ping 目标库，失败时直接抛出，让应用启动失败。"""
    global _client
    uri = uri or settings.MONGO_URI
    db_name = db_name or settings.MONGO_DB_NAME

    _client = AsyncIOMotorClient(uri, serverSelectionTimeoutMS=settings.MONGO_TIMEOUT_MS)
    db = _client[db_name]
    try:
        await db.command("ping")
    except PyMongoError as e:
        logger.error("MongoDB 连接失败 | uri=%s | err=%s", mask_uri(uri), e, exc_info=True)
        _client.close()
        _client = None
        raise
    logger.info("MongoDB 已连接 | uri=%s | db=%s", mask_uri(uri), db_name)
    return db


async def close_mongo() -> None:
    global _client
    if _client is None:
        return
    _client.close()
    _client = None
    logger.info("MongoDB 连接已关闭")


async def ping_mongo() -> bool:
    """健康检查用：未连接或 ping 失败都返回 ``False``。"""
    if _client is None:
        return False
    try:
        await _client[settings.MONGO_DB_NAME].command("ping")
    except PyMongoError as e:
        logger.warning("MongoDB ping 失败: %s", e)
        return False
    return True

