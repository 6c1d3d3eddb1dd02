from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    output_dir: str
    import_batch_size: int
    max_error_messages: int
    statement_timeout_seconds: float
    ledger_max_retries: int
    retry_backoff_seconds: float
    currency: str
    receipt_prefix: str
    record_duplicate_rows: bool = False


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "importledger"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./imports.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        import_batch_size=int(os.getenv("IMPORT_BATCH_SIZE", "50")),
        max_error_messages=int(os.getenv("MAX_ERROR_MESSAGES", "10")),
        statement_timeout_seconds=float(os.getenv("STATEMENT_TIMEOUT_SECONDS", "15")),
        ledger_max_retries=int(os.getenv("LEDGER_MAX_RETRIES", "2")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "0.5")),
        currency=os.getenv("CURRENCY", "KES"),
        receipt_prefix=os.getenv("RECEIPT_PREFIX", "RCP"),
        record_duplicate_rows=_env_flag("RECORD_DUPLICATE_ROWS"),
    )
