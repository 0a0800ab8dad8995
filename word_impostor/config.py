from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_WORD_PAIRS_CSV = str(Path(__file__).resolve().parent / "data" / "word_pairs.csv")


class Settings(BaseSettings):
    google_cloud_project: str = ""
    google_application_credentials: str = ""
    firestore_emulator_host: Optional[str] = None
    store_backend: str = "firestore"  # firestore | memory
    gemini_api_key: str = ""
    word_model: str = "gemini-2.5-flash"
    word_source: str = "csv"  # csv | gemini
    word_language: str = "vi"
    word_pairs_csv: str = _DEFAULT_WORD_PAIRS_CSV
    winner_points: int = 50
    min_players: int = 2
    # CORS origins; set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ]
    # Extra production origin; appended to allowed_origins
    extra_origin: str = ""
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )

    @property
    def cors_origins(self) -> List[str]:
        if self.extra_origin:
            return [*self.allowed_origins, self.extra_origin]
        return list(self.allowed_origins)


settings = Settings()
