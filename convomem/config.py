"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """convomem configuration. All values come from CONVOMEM_* variables."""

    # Storage
    data_dir: Path = Field(default=Path("data"))
    storage_backend: str = Field(default="files")  # "files" or "sqlite"
    database_path: Path = Field(default=Path("data/convomem.db"))
    legacy_history_path: Path = Field(default=Path("data/conversation-history.json"))

    # Conversation cache
    max_conversations: int = Field(default=50)
    max_messages_in_memory: int = Field(default=200)
    cleanup_interval_seconds: int = Field(default=300)

    # Memory store
    memory_index_limit: int = Field(default=1000)

    # Automatic memory
    auto_memory_search: bool = Field(default=True)
    auto_memory_save: bool = Field(default=True)
    memory_search_threshold: float = Field(default=0.3)
    memory_save_threshold: float = Field(default=0.7)
    max_context_memories: int = Field(default=5)
    auto_save_types: str = Field(
        default="user_preference,solution,project_knowledge,code_snippet"
    )

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="CONVOMEM_", env_file=_env_file(), env_file_encoding="utf-8"
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_auto_save_types(self) -> list[str]:
        """Parse AUTO_SAVE_TYPES into a list of memory type names."""
        if not self.auto_save_types.strip():
            return []
        return [t.strip() for t in self.auto_save_types.split(",") if t.strip()]


settings = Settings()
