from __future__ import annotations

import os
from pathlib import Path


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(f"RIDGELAB_{name}")
    if value is None or not value.strip():
        return default
    return value.strip()


class Settings:
    app_name = "Ridgelab Forensic Texture API"
    app_version = "0.1.0"

    base_dir = Path(__file__).resolve().parents[1]
    storage_dir = Path(_env("STORAGE_DIR", str(base_dir / "storage")))
    db_path = base_dir / "ridgelab.db"
    database_url = _env("DATABASE_URL", f"sqlite:///{db_path}")
    public_base_url = _env("PUBLIC_BASE_URL", "")

    cors_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ]

    ridge_threshold = 128
    noise_half_width = 20
    prompt_version = "5.0"
    prompt_text = (
        "FORENSIC FINGERPRINT TEXTURE SYNTHESIS v5.0: "
        "ridge<128 red, achromatic granulation +/-20, valleys pure white, "
        "3x3 sharpen [0,-1,0/-1,5,-1/0,-1,0] with edge replication"
    )

    oracle_url = _env("ORACLE_URL")
    oracle_api_key = _env("ORACLE_API_KEY")
    oracle_timeout_s = float(_env("ORACLE_TIMEOUT_S", "45"))

    notify_url = _env("NOTIFY_URL")
    notify_api_key = _env("NOTIFY_API_KEY")
    notify_timeout_s = float(_env("NOTIFY_TIMEOUT_S", "10"))
    quality_alert_threshold = float(_env("QUALITY_ALERT_THRESHOLD", "0.6"))


settings = Settings()
