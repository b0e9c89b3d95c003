"""Application configuration with optional SecretStr encryption key.

Loads settings from .env file with ORGBRAIN_ prefix.
Validates database path is on ext4 filesystem (not NTFS) to prevent WAL corruption in WSL2.
Learning thresholds live here so they can be tuned per deployment; services
receive them as a LearningConfig (see orgbrain.learning.thresholds).
"""

from typing import Optional

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """OrgBrain application settings.

    All settings are loaded from environment variables with ORGBRAIN_ prefix,
    or from a .env file in the working directory.
    """

    db_path: str = "data/orgbrain.db"
    db_encryption_key: Optional[SecretStr] = None
    debug: bool = False

    # Embeddings
    embedding_model: str = "BAAI/bge-m3"
    embedding_use_fp16: bool = True

    # Confidence thresholds (1-100 scale)
    default_confidence: int = 70
    high_confidence: int = 80
    medium_confidence: int = 60
    override_confidence: int = 90

    # Duplicate detection
    semantic_similarity_threshold: float = 0.9
    lexical_similarity_threshold: float = 0.85
    duplicate_window_days: int = 30

    # Application
    apply_batch_size: int = 100
    apply_write_retries: int = 3
    field_history_limit: int = 10
    metrics_history_limit: int = 100

    # Confidence decay
    decay_half_life_days: float = 90
    decay_min_confidence_ratio: float = 0.5
    decay_max_age_days: float = 180
    decay_grace_days: float = 7

    model_config = {
        "env_file": ".env",
        "env_prefix": "ORGBRAIN_",
    }

    @model_validator(mode="after")
    def validate_db_path_not_ntfs(self) -> "Settings":
        """Reject database paths on NTFS mounts to prevent WAL corruption."""
        if self.db_path.startswith("/mnt/"):
            raise ValueError(
                "Database path must be on ext4 filesystem, not NTFS (/mnt/). "
                "Use a path under /home/."
            )
        return self

    @model_validator(mode="after")
    def validate_threshold_order(self) -> "Settings":
        """Confidence tiers must be ordered medium <= high <= override."""
        if not (
            self.medium_confidence <= self.high_confidence <= self.override_confidence
        ):
            raise ValueError(
                "Confidence thresholds must satisfy medium <= high <= override "
                f"(got {self.medium_confidence}, {self.high_confidence}, "
                f"{self.override_confidence})"
            )
        return self


def get_settings() -> Settings:
    """Create and return a Settings instance.

    Raises a clear error message if the environment holds invalid values.
    """
    try:
        return Settings()
    except Exception as e:
        raise RuntimeError(
            f"Failed to load OrgBrain settings: {e}\n"
            "Check ORGBRAIN_* environment variables or the .env file "
            "in the working directory."
        ) from e
