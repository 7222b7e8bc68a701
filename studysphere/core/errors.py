"""
studysphere.core.errors
~~~~~~~~~~~~~~~~~~~~~~~

自习室领域异常。

事件分发层只捕获 ``StudyRoomError`` 的子类并转换为对应的出站事件，
其余异常按未知错误处理（记录日志并回送 ``error``）。
"""
from __future__ import annotations


class StudyRoomError(Exception):
    """自习室领域异常基类。

    Attributes:
        message: 可直接回送给客户端的提示信息。
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RoomNotFoundError(StudyRoomError):
    """目标房间在持久化存储中不存在。"""

    def __init__(self, room_id: str) -> None:
        super().__init__(f"room not found: {room_id}")
        self.room_id = room_id


class PersistenceError(StudyRoomError):
    """持久化存储读写失败。"""

    def __init__(self, operation: str, cause: Exception) -> None:
        super().__init__(f"persistence failure during {operation}")
        self.operation = operation
        self.cause = cause
