from pydantic_settings import BaseSettings
from typing import List, Optional
from enum import Enum


class Environment(str, Enum):

    """运行环境枚举"""
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class Settings(BaseSettings):

    # 应用基础配置
    app_name: str = "Course Commerce Engine"
    app_version: str = "1.0.0"
    environment: Environment = Environment.TESTING
    debug: bool = True

    # 数据库配置
    database_url: Optional[str] = None
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "course_commerce_db"
    db_user: str = "course_commerce_user"
    db_password: str = "course_commerce_password"

    # Redis配置 (目录缓存 + 实时变更通知)
    redis_url: Optional[str] = None
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    # 后端API地址配置
    api_base_url: Optional[str] = None  # 显式覆盖，优先级最高
    dev_proxy_path: str = "/api"
    app_origin: str = "http://localhost:5173"
    remote_api_url: Optional[str] = None
    firebase_project_id: Optional[str] = None
    api_timeout_seconds: float = 15.0

    # 支付网关配置
    payment_key_id: Optional[str] = None
    payment_key_secret: Optional[str] = None
    payment_currency: str = "INR"

    # 报名对账配置
    reconcile_max_attempts: int = 3
    reconcile_retry_backoff_seconds: float = 0.2

    # 学习进度配置
    video_complete_threshold: int = 80  # 容忍跳过片尾
    video_url_ttl_seconds: int = 3600
    video_url_base: str = "https://media.example.com/secure"
    video_url_secret: str = "video-url-secret-change-in-production-environment"

    # 访问令牌校验
    jwt_secret: str = "jwt-secret-change-in-production-environment"
    jwt_algorithm: str = "HS256"
    jwt_audience: Optional[str] = None

    # 日志配置
    log_level: str = "INFO"

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def database_url_computed(self) -> str:
        """计算数据库URL"""
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def redis_url_computed(self) -> str:
        """计算Redis URL"""
        if self.redis_url:
            return self.redis_url
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def remote_api_url_computed(self) -> str:
        """计算远程API地址（未显式配置时根据Firebase项目ID推导）"""
        if self.remote_api_url:
            return self.remote_api_url
        pid = self.firebase_project_id or "your-project-id"
        return f"https://us-central1-{pid}.cloudfunctions.net/api"

    @property
    def api_candidate_bases(self) -> List[str]:
        """按尝试顺序排列的候选API根地址"""
        if self.api_base_url:
            return [self.api_base_url]
        if self.is_development:
            return [self.dev_proxy_path, self.remote_api_url_computed]
        return [self.remote_api_url_computed]

    class Config:
        env_file = ".env"
        case_sensitive = False


# 全局配置实例
settings = Settings()
