import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from items import DEFAULT_ITEMS_PATH


class MissingEnvError(RuntimeError):
    """Raised when a required environment variable is absent."""


@dataclass
class Settings:
    telegram_token: str
    base_url: str
    port: int
    items_path: Path
    log_level: str
    consecutive_limit: Optional[int]

    @classmethod
    def load(cls) -> "Settings":
        telegram_token = os.environ.get("TELEGRAM_TOKEN")
        base_url = os.environ.get("BASE_URL", "")
        port = int(os.environ.get("PORT", "10000"))
        items_path = os.environ.get("ITEMS_PATH")
        limit = os.environ.get("CONSECUTIVE_LIMIT")

        missing = [name for name, value in (
            ("TELEGRAM_TOKEN", telegram_token),
        ) if not value]

        if missing:
            raise MissingEnvError(
                f"Отсутствуют переменные окружения: {', '.join(missing)}. "
                "Проверьте конфигурацию перед запуском."
            )

        return cls(
            telegram_token=telegram_token,
            base_url=base_url.rstrip("/"),
            port=port,
            items_path=Path(items_path) if items_path else DEFAULT_ITEMS_PATH,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            consecutive_limit=int(limit) if limit else None,
        )
