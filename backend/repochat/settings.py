from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # --- Web origin (CORS) ---
    WEB_ORIGIN: str = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    # --- LLM (OpenAI-compatible chat/completions) ---
    LLM_BASE_URL: str = "https://api.openai.com"
    LLM_API_KEY: str | None = None
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_EDIT_MODEL: str | None = None
    LLM_TIMEOUT_SEC: int = 300
    LLM_TEMPERATURE: float = 0.2

    # --- GitHub ---
    GITHUB_API_BASE: str = "https://api.github.com"
    GITHUB_TOKEN: str | None = None
    REMOTE_HTTP_RETRIES: int = 2

    # --- Agent limits ---
    READ_FILE_MAX_CHARS: int = 30_000
    CONTEXT_FILE_MAX_CHARS: int = 30_000
    MAX_TOOL_TURNS: int = 12

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
