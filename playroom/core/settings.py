"""
playroom.core.settings
~~~~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）

金额字段统一使用整数最小货币单位（分），避免浮点误差。
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="PlayRoom Core", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 存储 ──────────────────────────────────────────────────────────
    STORAGE_BACKEND: Literal["memory", "mongo"] = Field(
        default="memory",
        description="钱包与流水的存储后端：memory（开发/测试）/ mongo",
    )
    MONGO_URI: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB 连接串",
    )
    MONGO_DB_NAME: str = Field(default="playroom", description="MongoDB 数据库名")

    # ── 房间计费默认值（可在创建房间时覆盖）────────────────────────────
    DEFAULT_ENTRY_FEE: int = Field(default=1000, ge=0, description="入场费（分）")
    DEFAULT_FREE_TRIAL_SECONDS: int = Field(
        default=600, ge=0, description="免费体验时长（秒）",
    )
    DEFAULT_PER_MINUTE_RATE: int = Field(
        default=200, ge=0, description="体验期结束后每整分钟费用（分）",
    )
    TIP_CREATOR_SHARE_PERCENT: int = Field(
        default=90, ge=0, le=100, description="打赏/购买收入中创作者分成百分比",
    )

    # ── 上麦席位默认容量 ──────────────────────────────────────────────
    DEFAULT_CREATOR_SLOTS: int = Field(default=4, ge=0, description="创作者席位数")
    DEFAULT_FAN_SLOTS: int = Field(default=10, ge=0, description="粉丝席位数")

    # ── 在线检测 / 后台任务 ───────────────────────────────────────────
    PRESENCE_GRACE_SECONDS: float = Field(
        default=45.0, gt=0, description="心跳超时宽限期（秒），超时后强制离场结算",
    )
    TICK_INTERVAL_SECONDS: float = Field(
        default=1.0, gt=0, description="计费刷新与在线检测的循环间隔（秒）",
    )
    RECONCILE_INTERVAL_SECONDS: float = Field(
        default=30.0, gt=0, description="未结算会话的重试间隔（秒）",
    )

    # ── 限流 ──────────────────────────────────────────────────────────
    RATE_LIMIT_ENABLED: bool = Field(default=True, description="是否启用 HTTP 限流")
    WS_RATE_LIMIT_INTERVAL: float = Field(
        default=1.0, description="WebSocket 心跳帧最小间隔（秒）",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=8000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

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
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
