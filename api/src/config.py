from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List

class Settings(BaseSettings):
    webhook_secret: str = ""
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "*"  # Comma-separated
    log_level: str = "INFO"

    class Config:
        env_file = ".env"

    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

@lru_cache()
def get_settings() -> Settings:
    return Settings()
