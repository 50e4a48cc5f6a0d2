"""Application configuration loaded once from the environment (and ``.env``).

``Settings`` is built at process start, stored on ``app.state`` and handed to
components by parameter. Per-component configs (``LLMConfig``,
``PipedriveConfig``) are immutable and validated before any outbound call.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from teamscan.errors import UpstreamConfigError

PACKAGE_DIR = Path(__file__).parent

_PLACEHOLDER_MARKERS = ("your-resource", "example", "your-company-domain", "changeme")


def _is_placeholder(value: str) -> bool:
    lowered = value.lower()
    return any(marker in lowered for marker in _PLACEHOLDER_MARKERS)


@dataclass(frozen=True)
class LLMConfig:
    provider: str
    endpoint: str
    credential: SecretStr
    model: str
    api_version: str
    max_output_tokens: int = 16000
    timeout_seconds: float = 120.0


@dataclass(frozen=True)
class PipedriveConfig:
    api_token: SecretStr
    company_domain: str

    @property
    def base_url(self) -> str:
        return f"https://{self.company_domain}.pipedrive.com/api/v1"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    # Storage
    database_url: str | None = None
    data_dir: Path = PACKAGE_DIR / "data"
    upload_dir: Path | None = None

    # Admin API
    admin_api_key: SecretStr | None = None
    app_base_url: str = "http://localhost:3000"
    survey_token_ttl_days: int = 30
    log_level: str = "INFO"

    # LLM
    llm_provider: str = "azure"
    azure_ai_endpoint: str = ""
    azure_ai_api_key: SecretStr | None = None
    azure_ai_model_name: str = "gpt-4o"
    azure_ai_api_version: str = "2025-04-01-preview"
    openai_api_key: SecretStr | None = None
    openai_base_url: str = ""
    llm_model: str = "gpt-4o-mini"
    llm_max_output_tokens: int = 16000
    llm_timeout_seconds: float = 120.0

    # Analysis
    transcript_prompt_chars: int = 1000
    min_survey_responses: int = 0
    min_transcripts: int = 0

    # CRM
    pipedrive_api_token: SecretStr | None = None
    pipedrive_company_domain: str = ""

    @property
    def resolved_database_url(self) -> str:
        return self.database_url or f"sqlite:///{self.data_dir / 'teamscan.db'}"

    @property
    def transcript_dir(self) -> Path:
        return self.upload_dir or (self.data_dir / "transcripts")

    def llm_config(self) -> LLMConfig:
        """Validate LLM settings and return an immutable config for ``LLMClient``."""
        if self.llm_provider == "azure":
            key = self.azure_ai_api_key
            if not self.azure_ai_endpoint or key is None or not key.get_secret_value():
                raise UpstreamConfigError(
                    "Azure OpenAI configuration missing. Set AZURE_AI_ENDPOINT and AZURE_AI_API_KEY."
                )
            if _is_placeholder(self.azure_ai_endpoint):
                raise UpstreamConfigError(
                    "AZURE_AI_ENDPOINT still holds a placeholder. Set it to your resource endpoint "
                    "(e.g. https://<resource-name>.openai.azure.com)."
                )
            return LLMConfig(
                provider="azure",
                endpoint=self.azure_ai_endpoint.rstrip("/"),
                credential=key,
                model=self.azure_ai_model_name,
                api_version=self.azure_ai_api_version,
                max_output_tokens=self.llm_max_output_tokens,
                timeout_seconds=self.llm_timeout_seconds,
            )
        if self.llm_provider in ("openai", "openai_compatible"):
            key = self.openai_api_key
            if key is None or not key.get_secret_value():
                raise UpstreamConfigError("OpenAI configuration missing. Set OPENAI_API_KEY.")
            if self.openai_base_url and _is_placeholder(self.openai_base_url):
                raise UpstreamConfigError("OPENAI_BASE_URL still holds a placeholder value.")
            return LLMConfig(
                provider="openai",
                endpoint=self.openai_base_url.rstrip("/"),
                credential=key,
                model=self.llm_model,
                api_version="",
                max_output_tokens=self.llm_max_output_tokens,
                timeout_seconds=self.llm_timeout_seconds,
            )
        raise UpstreamConfigError(f"Unknown LLM provider: {self.llm_provider!r}")

    def pipedrive_config(self) -> PipedriveConfig:
        token = self.pipedrive_api_token
        if token is None or not token.get_secret_value():
            raise UpstreamConfigError("PIPEDRIVE_API_TOKEN is not set.")
        domain = self.pipedrive_company_domain.strip()
        if not domain or _is_placeholder(domain):
            raise UpstreamConfigError(
                "PIPEDRIVE_COMPANY_DOMAIN is not set (e.g. 'yourcompany' for yourcompany.pipedrive.com)."
            )
        return PipedriveConfig(api_token=token, company_domain=domain)
