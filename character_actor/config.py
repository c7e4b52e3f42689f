# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Configuration module for the character actor service.

This module loads and validates configuration from environment variables.
All settings are validated at startup to fail fast if configuration is invalid.
"""

from functools import lru_cache
from typing import Dict, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables
    (case-insensitive, e.g. ORCHESTRATOR_BASE_URL, AI_CAUTION).
    """

    # Orchestrator Configuration
    orchestrator_base_url: str = Field(
        ...,
        description="Base URL for the game orchestrator",
        examples=["http://localhost:3000", "https://orchestrator.example.com"]
    )
    registration_timeout: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="HTTP timeout for a single registration attempt in seconds"
    )
    heartbeat_timeout: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="HTTP timeout for a heartbeat call in seconds"
    )
    submission_timeout: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="HTTP timeout for an action submission in seconds"
    )
    unregister_timeout: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="HTTP timeout for the unregister call in seconds"
    )

    # Character Identity
    character_id: Optional[str] = Field(
        default=None,
        description="Stable character identifier (generated at startup when unset)"
    )
    character_name: str = Field(
        default="Unnamed Adventurer",
        description="Display name reported to the orchestrator"
    )
    character_class: str = Field(
        default="fighter",
        description="Class tag; selects the class modifier table"
    )
    character_level: int = Field(
        default=1,
        ge=1,
        le=20,
        description="Character level (1-20)"
    )
    max_health: int = Field(
        default=20,
        ge=1,
        description="Maximum health for a freshly created character"
    )
    max_mana: int = Field(
        default=0,
        ge=0,
        description="Maximum resource pool for a freshly created character"
    )
    ability_scores: Dict[str, int] = Field(
        default_factory=dict,
        description='Ability scores as JSON, e.g. {"str": 16, "dex": 12}'
    )
    character_endpoint: str = Field(
        default="http://localhost:8080",
        description="URL at which the orchestrator can reach this actor"
    )

    # Lifecycle Configuration
    registration_max_attempts: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Registration attempt ceiling before startup fails"
    )
    registration_base_delay: float = Field(
        default=2.0,
        ge=0.0,
        le=60.0,
        description="Base delay in seconds; attempt N waits base_delay * N"
    )
    heartbeat_interval: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between heartbeat ticks"
    )
    auto_register: bool = Field(
        default=True,
        description="Register with the orchestrator during startup"
    )

    # Submission Configuration
    submit_decisions: bool = Field(
        default=True,
        description="Submit chosen actions to the orchestrator when registered"
    )
    submission_max_attempts: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Attempts per submission for transient failures (1 disables retry)"
    )
    submission_retry_delay: float = Field(
        default=0.5,
        ge=0.0,
        le=30.0,
        description="Base delay in seconds between submission attempts"
    )

    # Event Gateway / Persistence
    event_queue_size: int = Field(
        default=64,
        ge=1,
        le=10000,
        description="Maximum number of queued inbound work items"
    )
    state_dir: str = Field(
        default="./data",
        description="Directory for persisted character snapshots"
    )
    save_interval: float = Field(
        default=300.0,
        gt=0,
        description="Seconds between periodic snapshot saves"
    )

    # Decision Weights
    enable_ai: bool = Field(
        default=True,
        description="Let the decision engine act on turn notifications"
    )
    ai_aggressiveness: float = Field(default=0.5, ge=0.0, le=1.0)
    ai_caution: float = Field(default=0.5, ge=0.0, le=1.0)
    ai_curiosity: float = Field(default=0.7, ge=0.0, le=1.0)
    ai_tactical: float = Field(default=0.5, ge=0.0, le=1.0)
    ai_thoroughness: float = Field(default=0.6, ge=0.0, le=1.0)
    ai_secret_finding: float = Field(default=0.5, ge=0.0, le=1.0)
    ai_trap_awareness: float = Field(default=0.7, ge=0.0, le=1.0)
    ai_leadership: float = Field(default=0.3, ge=0.0, le=1.0)
    ai_teamwork: float = Field(default=0.7, ge=0.0, le=1.0)
    ai_spellcasting: float = Field(default=0.5, ge=0.0, le=1.0)
    rng_seed: Optional[int] = Field(
        default=None,
        description="Optional RNG seed for deterministic debugging (leave unset for secure randomness)"
    )

    # Service Configuration
    service_name: str = Field(
        default="character-actor",
        description="Service name for logging and identification"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_json_format: bool = Field(
        default=False,
        description="Enable JSON structured logging output"
    )
    enable_metrics: bool = Field(
        default=False,
        description="Enable metrics collection and /metrics endpoint"
    )

    @field_validator('orchestrator_base_url', 'character_endpoint')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL format."""
        if not v:
            raise ValueError("URL cannot be empty")
        if not (v.startswith('http://') or v.startswith('https://')):
            raise ValueError(
                f"URL must start with http:// or https://, got: {v}"
            )
        # Remove trailing slash for consistency
        return v.rstrip('/')

    @field_validator('character_class')
    @classmethod
    def normalize_class(cls, v: str) -> str:
        """Class tags are matched case-insensitively."""
        v = v.strip().lower()
        if not v:
            raise ValueError("character_class cannot be empty")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a recognized value."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(
                f"log_level must be one of {valid_levels}, got: {v}"
            )
        return v_upper

    def weight_values(self) -> dict:
        """Decision weights keyed by their model field names."""
        return {
            "aggressiveness": self.ai_aggressiveness,
            "caution": self.ai_caution,
            "curiosity": self.ai_curiosity,
            "tactical": self.ai_tactical,
            "thoroughness": self.ai_thoroughness,
            "secret_finding": self.ai_secret_finding,
            "trap_awareness": self.ai_trap_awareness,
            "leadership": self.ai_leadership,
            "teamwork": self.ai_teamwork,
            "spellcasting": self.ai_spellcasting,
        }

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance with LRU caching.

    The cache can be cleared for testing using get_settings.cache_clear().

    Returns:
        Settings instance with validated configuration

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    try:
        return Settings()
    except Exception as e:
        raise ValueError(
            f"Configuration error: {e}. "
            "Ensure all required environment variables are set "
            "(ORCHESTRATOR_BASE_URL at minimum)."
        ) from e
