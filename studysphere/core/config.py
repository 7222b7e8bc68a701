"""
studysphere.core.config
~~~~~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")

# 未显式设置 LOG_LEVEL 时各环境的默认日志级别
_DEFAULT_LOG_LEVELS: dict[str, str] = {"dev": "INFO", "test": "DEBUG", "prod": "WARNING"}


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="StudySphere Rooms", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── MongoDB ───────────────────────────────────────────────────────
    MONGO_URI: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB 连接串",
    )
    MONGO_DB_NAME: str = Field(default="studysphere", description="数据库名称")
    MONGO_TIMEOUT_MS: int = Field(
        default=5000,
        gt=0,
        description="选择服务器的超时时间（毫秒），超时后启动失败",
    )

    # ── 自习室 ────────────────────────────────────────────────────────
    SEED_DEFAULT_ROOMS: bool = Field(
        default=True,
        description="rooms 集合为空时是否写入默认自习室",
    )
    CHAT_RATE_LIMIT_INTERVAL: float = Field(
        default=0.5,
        ge=0,
        description="同一连接两条聊天消息之间的最小间隔（秒）",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=5000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")
    CORS_ALLOWED_ORIGINS: list[str] = Field(
        default=["http://localhost:5173"],
        description="prod 环境允许的 CORS 来源",
    )

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_dev(self) -> bool:
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        return self.is_dev

    @property
    def reload(self) -> bool:
        """热重载，仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """显式设置的 ``LOG_LEVEL`` 环境变量优先，否则按环境取默认值。"""
        return os.getenv("LOG_LEVEL") or _DEFAULT_LOG_LEVELS.get(self.ENVIRONMENT, self.LOG_LEVEL)

    @property
    def allow_cors_all_origins(self) -> bool:
        return not self.is_prod


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
