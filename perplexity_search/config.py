from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Perplexity web endpoints (reverse-engineered, unstable)
    perplexity_endpoint: str = "https://www.perplexity.ai/rest/sse/perplexity_ask"
    perplexity_auth_base_url: str = "https://www.perplexity.ai/api/auth"
    perplexity_api_version: str = "2.18"
    perplexity_user_agent: str = (
        "Perplexity/641 CFNetwork/1568.100.1 Darwin/24.0.0"
    )
    perplexity_model_preference: str = "pplx_pro_upgraded"
    perplexity_search_mode: str = "copilot"
    perplexity_language: str = "en-US"
    perplexity_timezone: str = ""  # empty -> local zone, else UTC
    request_timeout_seconds: float = 60.0

    # Credentials
    token_path: str = str(Path.home() / ".config" / "pi-perplexity" / "auth.json")
    pi_auth_no_borrow: bool = False
    pi_perplexity_email: str = ""
    pi_perplexity_otp: str = ""
    desktop_app_domain: str = "ai.perplexity.mac"

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = ""  # empty keeps logs on stderr only

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def resolved_token_path(self) -> Path:
        return Path(self.token_path).expanduser()


settings = Settings()
