from typing import Any
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChangeFlowBaseSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHANGEFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__"
    )

    app_env: str = Field(
        default="dev",
        description="Application deployment environment (e.g., dev, qa, prod, local)"
    )

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """Normalize the environment name.

        Args:
            v: The app_env value

        Returns:
            Lower-cased, stripped environment name
        """
        v = v.strip().lower()
        if not v:
            raise ValueError("app_env cannot be empty")
        return v

    def model_post_init(self, __context: Any) -> None:
        """Post initialization hook for additional setup.

        Subclasses override this method and call super() to add custom
        initialization logic after Pydantic validated all fields.
        """
        super().model_post_init(__context)
