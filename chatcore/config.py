"""Application settings read from the environment."""

import os
from pathlib import Path

from pydantic import BaseModel, Field

from chatcore.services.model_registry import DEFAULT_MODEL_ID


class AppSettings(BaseModel):
    """Process-level settings. API keys come from the credential store via the environment."""

    anthropic_api_key: str | None = Field(default=None, repr=False)
    openai_api_key: str | None = Field(default=None, repr=False)
    openai_base_url: str = "https://api.openai.com/v1"
    data_dir: Path | None = None
    default_model: str = DEFAULT_MODEL_ID
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppSettings":
        data_dir = os.getenv("CHATCORE_DATA_DIR")
        return cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            data_dir=Path(data_dir) if data_dir else None,
            default_model=os.getenv("CHATCORE_DEFAULT_MODEL", DEFAULT_MODEL_ID),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
