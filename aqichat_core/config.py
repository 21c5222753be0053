"""
Configuration management using Pydantic Settings
"""

from functools import lru_cache
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application Configuration
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    logs_dir: str = "logs"

    # OpenAI Chat Completions Configuration
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_url: str = "https://api.openai.com/v1/chat/completions"
    openai_timeout: float = 20.0
    openai_temperature: float = 0.7
    openai_max_tokens: int = 350

    @field_validator('openai_timeout', 'feature_service_timeout')
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate upstream request timeouts"""
        if v < 1:
            raise ValueError('Request timeout must be at least 1 second')
        if v > 120:
            raise ValueError('Request timeout cannot exceed 120 seconds')
        return v

    @field_validator('openai_temperature')
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate sampling temperature"""
        if v < 0.0 or v > 2.0:
            raise ValueError('Temperature must be between 0.0 and 2.0')
        return v

    @field_validator('openai_max_tokens')
    @classmethod
    def validate_max_tokens(cls, v: int) -> int:
        """Validate completion token budget"""
        if v < 1:
            raise ValueError('Max tokens must be at least 1')
        if v > 4096:
            raise ValueError('Max tokens cannot exceed 4096')
        return v

    # Completion Retry Configuration
    llm_retry_attempts: int = 3
    llm_parse_retry_delay: float = 0.3  # multiplied by attempt number
    llm_backoff_base: float = 0.7  # doubled per attempt on rate limit
    llm_backoff_jitter: float = 0.2

    @field_validator('llm_retry_attempts')
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        """Validate completion retry attempts"""
        if v < 1:
            raise ValueError('Retry attempts must be at least 1')
        if v > 10:
            raise ValueError('Retry attempts cannot exceed 10')
        return v

    @field_validator('llm_parse_retry_delay', 'llm_backoff_base', 'llm_backoff_jitter')
    @classmethod
    def validate_delay(cls, v: float) -> float:
        """Validate retry delays"""
        if v < 0:
            raise ValueError('Retry delays cannot be negative')
        return v

    # Living Atlas Feature Service (OpenAQ PM2.5, latest hour)
    feature_service_url: str = (
        "https://services9.arcgis.com/RHVPKKiFTONKtxq3/ArcGIS/rest/services/"
        "Air_Quality_PM25_Latest_Results/FeatureServer/0/query"
    )
    feature_service_timeout: float = 15.0

    # Chat Request Limits
    chat_max_chars: int = 600
    chat_max_turns: int = 8

    @field_validator('chat_max_chars', 'chat_max_turns')
    @classmethod
    def validate_chat_limits(cls, v: int) -> int:
        """Validate chat input caps"""
        if v < 1:
            raise ValueError('Chat limits must be at least 1')
        return v

    # Tool Result Cache TTLs (seconds)
    top_cities_cache_ttl: float = 60.0
    city_cache_ttl: float = 30.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Export settings for easy access
settings = get_settings()
