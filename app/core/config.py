from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    SECRET_KEY: str
    ALGORITHM: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int

    APP_NAME: str = "NL2SQL Chat API"
    LOG_LEVEL: str = "INFO"
    SQL_ECHO: bool = False
    RUN_MIGRATIONS: bool = True

    # Text generation backend
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.0-flash"
    GEMINI_TEMPERATURE: float = 0.1
    GEMINI_MAX_TOKENS: int = 2048

    # Joint budget for history read + generation + execution of one question
    QUERY_TIMEOUT_SECONDS: float = 30
    MAX_RESULT_ROWS: int = 10000

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
