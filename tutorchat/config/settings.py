"""
Application settings and configuration management.
"""
from pydantic_settings import BaseSettings
from typing import Optional
from pydantic import model_validator

from tutorchat.models.chat import Language


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # 服务配置
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False

    # CORS配置
    ALLOWED_ORIGINS: list = ["http://localhost:3000", "http://localhost:5173", "http://localhost"]

    # Record store 配置
    RECORD_STORE_BACKEND: str = "redis"  # redis, memory
    REDIS_URL: str = "redis://127.0.0.1:6379/0"
    REDIS_USERNAME: Optional[str] = None
    REDIS_PASSWORD: Optional[str] = None
    REDIS_KEY_PREFIX: str = "tutorchat:"

    # Model invocation 配置
    INVOCATION_MODE: str = "direct"  # direct, edge
    INVOKE_URL: Optional[str] = None
    INVOKE_AUTH_TOKEN: Optional[str] = None
    INVOKE_TIMEOUT: Optional[float] = None  # None = wait indefinitely

    # Provider credentials (direct mode)
    OPENAI_API_KEY: Optional[str] = None
    ANTHROPIC_API_KEY: Optional[str] = None
    GEMINI_API_KEY: Optional[str] = None
    GROQ_API_KEY: Optional[str] = None
    DEEPSEEK_API_KEY: Optional[str] = None
    PROVIDER_MAX_TOKENS: int = 500

    # 会话配置
    DEFAULT_LANGUAGE: str = Language.PORTUGUESE.value
    FALLBACK_ROUTE: str = "/language-models"
    CHAT_ROUTE_PREFIX: str = "/ai-chat"
    SESSION_TIMEOUT: int = 1800  # 30分钟

    @model_validator(mode='after')
    def validate_modes(self):
        """Reject unknown language and backend names early"""
        if self.DEFAULT_LANGUAGE not in {lang.value for lang in Language}:
            raise ValueError(f"DEFAULT_LANGUAGE must be one of {[lang.value for lang in Language]}")
        if self.RECORD_STORE_BACKEND not in ("redis", "memory"):
            raise ValueError("RECORD_STORE_BACKEND must be 'redis' or 'memory'")
        if self.INVOCATION_MODE not in ("direct", "edge"):
            raise ValueError("INVOCATION_MODE must be 'direct' or 'edge'")
        return self

    def provider_api_keys(self) -> dict:
        """Provider name -> API key, as used by the direct invocation mode"""
        return {
            "OpenAI": self.OPENAI_API_KEY,
            "Anthropic": self.ANTHROPIC_API_KEY,
            "Google Gemini": self.GEMINI_API_KEY,
            "Groq": self.GROQ_API_KEY,
            "DeepSeek": self.DEEPSEEK_API_KEY,
        }

    class Config:
        env_file = ".env"
        case_sensitive = True


# 创建全局settings实例
settings = Settings()


def get_settings() -> Settings:
    """
    获取设置实例

    Returns:
        Settings 实例
    """
    return settings
