import os
from dataclasses import dataclass

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class Config:
    database_url: str
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    health_port: int = 8081
    log_format: str = "json"

    # Tier 2 model transport
    openai_api_key: str = ""
    tier2_enabled: bool = True
    tier2_model: str = "gpt-5-mini"
    tier2_timeout_seconds: float = 60.0
    tier2_max_output_tokens: int = 16000

    # Pipeline tuning
    rule_timeout_seconds: float = 10.0
    escalation_threshold: float = 0.5
    max_recommendations: int = 5
    recommendation_ttl_hours: int = 24

    # Retrieval
    rag_timeout_seconds: float = 5.0
    rag_similarity_threshold: float = 0.5
    rag_max_text_length: int = 300

    @property
    def tier2_available(self) -> bool:
        return self.tier2_enabled and bool(self.openai_api_key.strip())

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            poll_interval_seconds=float(os.environ.get("MASTERY_POLL_INTERVAL", "5.0")),
            batch_size=int(os.environ.get("MASTERY_BATCH_SIZE", "10")),
            max_retries=int(os.environ.get("MASTERY_MAX_RETRIES", "3")),
            health_port=int(os.environ.get("MASTERY_HEALTH_PORT", "8081")),
            log_format=os.environ.get("MASTERY_LOG_FORMAT", "json"),
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
            tier2_enabled=_env_flag("MASTERY_TIER2_ENABLED", True),
            tier2_model=os.environ.get("MASTERY_TIER2_MODEL", "gpt-5-mini"),
            tier2_timeout_seconds=float(os.environ.get("MASTERY_TIER2_TIMEOUT", "60.0")),
            tier2_max_output_tokens=int(
                os.environ.get("MASTERY_TIER2_MAX_OUTPUT_TOKENS", "16000")
            ),
            rule_timeout_seconds=float(os.environ.get("MASTERY_RULE_TIMEOUT", "10.0")),
            escalation_threshold=float(
                os.environ.get("MASTERY_ESCALATION_THRESHOLD", "0.5")
            ),
            max_recommendations=int(os.environ.get("MASTERY_MAX_RECOMMENDATIONS", "5")),
            recommendation_ttl_hours=int(
                os.environ.get("MASTERY_RECOMMENDATION_TTL_HOURS", "24")
            ),
            rag_timeout_seconds=float(os.environ.get("MASTERY_RAG_TIMEOUT", "5.0")),
            rag_similarity_threshold=float(
                os.environ.get("MASTERY_RAG_SIMILARITY_THRESHOLD", "0.5")
            ),
            rag_max_text_length=int(os.environ.get("MASTERY_RAG_MAX_TEXT_LENGTH", "300")),
        )
