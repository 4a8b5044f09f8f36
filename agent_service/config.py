from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # LLM collaborator
    LLM_PROVIDER: str = Field("openai")
    LLM_API_KEY: str = Field("")
    LLM_BASE_URL: Optional[str] = Field(None)
    LLM_MODEL: str = Field("gpt-4o-mini")
    LLM_TEMPERATURE: float = Field(0.3)
    LLM_MAX_TOKENS: int = Field(1024)
    LLM_TIMEOUT_SECONDS: float = Field(30.0)
    LLM_MAX_RETRIES: int = Field(3)
    AZURE_DEPLOYMENT_ID: Optional[str] = Field(None)

    # Entity store
    DATABASE_URL: str = Field("sqlite+aiosqlite:///./entities.db")
    STORE_TIMEOUT_SECONDS: float = Field(10.0)

    # Entity registry
    DEFAULT_ENTITY_TYPE: str = Field("users")
    ENTITY_SCHEMA_PATH: str = Field("")

    # Plan execution
    PLAN_MAX_STEPS: int = Field(50)
    PLAN_MAX_REPEAT: int = Field(100)
    PLAN_FANOUT_CONCURRENCY: int = Field(1)

    # Safety
    ENABLE_SAFETY_DENYLIST: bool = Field(True)
    SAFETY_DENYLIST_PATTERNS: List[str] = Field(
        [
            r"\bdrop\s+(all\s+)?(the\s+)?tables?\b",
            # unqualified bulk deletes only
            r"\bdelete\s+(all|every|everything)(\s+(the\s+)?\w+)?(\s+(now|immediately|please))?\s*[.!]*\s*$",
            r"\b(destroy|wipe|erase)\s+(the\s+)?(whole\s+)?database\b",
            r"\btruncate\b",
            r"\b(shutdown|shut\s+down)\s+(the\s+)?server\b",
        ]
    )

    # Service
    API_HOST: str = Field("0.0.0.0")
    API_PORT: int = Field(8000)
    LOG_LEVEL: str = Field("INFO")
    LOG_DIR: str = Field("")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
