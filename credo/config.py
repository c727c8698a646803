"""Runtime settings collected from environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

DATA_DIR = Path(__file__).parent / "data"


def _env_float(key: str, default: float) -> float:
    raw = os.environ.get(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class StepTimeouts:
    """Upper bounds (seconds) for each pipeline step and for a whole run."""
    ingest: float = 300.0
    synthesis: float = 300.0
    discovery: float = 600.0
    evaluation: float = 300.0
    pipeline: float = 1800.0


@dataclass(frozen=True)
class Settings:
    db_path: Path = DATA_DIR / "credo.db"
    openai_api_key: str = ""
    openai_base_url: str = ""
    llm_model: str = "gpt-5"
    llm_reasoning_effort: str = "low"
    blob_backend: str = "local"
    blob_dir: Path = DATA_DIR / "blobs"
    s3_bucket: str = ""
    aws_region: str = ""
    leadspicker_api_key: str = ""
    leadspicker_base_url: str = "https://app.leadspicker.com/app/sb/api"
    max_upload_bytes: int = 150 * 1024 * 1024
    log_level: str = "INFO"
    stale_run_grace: float = 0.0
    timeouts: StepTimeouts = field(default_factory=StepTimeouts)

    @classmethod
    def from_env(cls) -> Settings:
        env = os.environ
        return cls(
            db_path=Path(env.get("CREDO_DB_PATH") or DATA_DIR / "credo.db"),
            openai_api_key=env.get("OPENAI_API_KEY", ""),
            openai_base_url=env.get("OPENAI_BASE_URL", ""),
            llm_model=env.get("LLM_MODEL") or "gpt-5",
            llm_reasoning_effort=env.get("LLM_REASONING_EFFORT") or "low",
            blob_backend=(env.get("BLOB_BACKEND") or "local").strip().lower(),
            blob_dir=Path(env.get("BLOB_DIR") or DATA_DIR / "blobs"),
            s3_bucket=env.get("S3_BUCKET_NAME", ""),
            aws_region=env.get("AWS_REGION", ""),
            leadspicker_api_key=env.get("LEADSPICKER_API_KEY", ""),
            leadspicker_base_url=(
                env.get("LEADSPICKER_BASE_URL") or "https://app.leadspicker.com/app/sb/api"
            ).rstrip("/"),
            max_upload_bytes=int(_env_float("MAX_UPLOAD_MB", 150) * 1024 * 1024),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            stale_run_grace=_env_float("STALE_RUN_GRACE", 0),
            timeouts=StepTimeouts(
                ingest=_env_float("INGEST_TIMEOUT", 300),
                synthesis=_env_float("SYNTHESIS_TIMEOUT", 300),
                discovery=_env_float("DISCOVERY_TIMEOUT", 600),
                evaluation=_env_float("EVALUATION_TIMEOUT", 300),
                pipeline=_env_float("PIPELINE_TIMEOUT", 1800),
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
