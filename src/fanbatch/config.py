"""Provider configuration loaded from the environment."""

from __future__ import annotations

import os
import typing as t
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

# setting name -> environment variables, first match wins
_ENV_VARS: dict[str, tuple[str, ...]] = {
    "gemini_api_key": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
    "gemini_model": ("GOOGLE_GEMINI_MODEL",),
    "anthropic_api_key": ("ANTHROPIC_API_KEY",),
    "anthropic_model": ("ANTHROPIC_MODEL",),
    "anthropic_max_tokens": ("ANTHROPIC_MAX_TOKENS",),
    "openai_api_key": ("OPENAI_API_KEY",),
    "openai_model": ("OPENAI_MODEL",),
    "http_timeout_seconds": ("FANBATCH_HTTP_TIMEOUT",),
}


class ProviderSettings(BaseModel):
    """
    Credentials, model identifiers and endpoints for every provider adapter.

    Keys and model names are treated as opaque strings. A missing key only
    fails the submissions that need it.
    """

    model_config = ConfigDict(frozen=True)

    gemini_api_key: str | None = Field(default=None, repr=False)
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_upload_base_url: str = "https://generativelanguage.googleapis.com/upload/v1beta"
    gemini_download_base_url: str = "https://generativelanguage.googleapis.com/download/v1beta"

    anthropic_api_key: str | None = Field(default=None, repr=False)
    anthropic_model: str = "claude-sonnet-4-20250514"
    anthropic_max_tokens: int = 1024
    anthropic_version: str = "2023-06-01"
    anthropic_base_url: str = "https://api.anthropic.com"

    openai_api_key: str | None = Field(default=None, repr=False)
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com"
    openai_completion_window: str = "24h"

    http_timeout_seconds: float = 30.0

    @classmethod
    def from_env(
        cls,
        *,
        use_dotenv: bool = True,
        dotenv_path: str | Path | None = None,
        **overrides: t.Any,
    ) -> ProviderSettings:
        """
        Build settings from environment variables.

        Parameters
        ----------
        use_dotenv : bool, optional
            Load a ``.env`` file first. Variables already set win.
        dotenv_path : str | Path | None, optional
            File to load instead of the nearest ``.env``.
        **overrides : typing.Any
            Explicit values that take precedence over the environment.

        Returns
        -------
        ProviderSettings
            Validated settings.
        """
        if use_dotenv:
            load_dotenv(dotenv_path=dotenv_path, override=False)
        values: dict[str, t.Any] = {}
        for field_name, env_vars in _ENV_VARS.items():
            for env_var in env_vars:
                value = os.getenv(env_var)
                if value:
                    values[field_name] = value
                    break
        values.update(overrides)
        return cls.model_validate(values)
