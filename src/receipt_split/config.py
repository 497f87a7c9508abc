"""Configuration management for ReceiptSplit."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Currency settings
    base_currency: str = "EUR"  # Base currency for newly created users

    # Exchange rate source
    rate_api_url: str = "https://api.exchangerate.host"
    rate_timeout: float = 10.0  # Seconds before falling back to built-in rates

    # Share links
    share_base_url: str = "https://example.invalid/index.html"

    # Database path
    database_path: Path = Path.home() / ".receipt_split" / "receipt_split.db"

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.base_currency = self.base_currency.upper()
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ValueError(
            f"Failed to load settings. Check the values in your .env file "
            f"or environment. See .env.example for reference.\n"
            f"Error: {e}"
        ) from e
