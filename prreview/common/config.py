import logging
import os

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+asyncpg://postgres:postgres@db:5432/prreview"
)

KAFKA_BOOTSTRAP = os.getenv("KAFKA_BOOTSTRAP", "broker:29092")
KAFKA_TOPIC_JOBS = os.getenv("KAFKA_TOPIC_JOBS", "review.jobs")
KAFKA_GROUP_ID = os.getenv("KAFKA_GROUP_ID", "pr-review-worker")
EMBEDDED_WORKER = os.getenv("EMBEDDED_WORKER", "true").lower() == "true"

GITHUB_API = os.getenv("GITHUB_API", "https://api.github.com")
GITHUB_WEB = os.getenv("GITHUB_WEB", "https://github.com")
GITHUB_APP_ID = os.getenv("GITHUB_APP_ID")
GITHUB_APP_PRIVATE_KEY_PATH = os.getenv(
    "GITHUB_APP_PRIVATE_KEY_PATH",
    "./secrets/github-app-private-key.pem"
)
WEBHOOK_SECRET = os.getenv("GITHUB_WEBHOOK_SECRET", "").encode()
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")

CHAT_MODEL = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini")
EMBED_MODEL = os.getenv("OPENAI_EMBED_MODEL", "text-embedding-3-small")
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "8192"))
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.0"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
LLM_RETRY_BASE_DELAY = float(os.getenv("LLM_RETRY_BASE_DELAY", "1.0"))

REVIEW_TIMEOUT_SECONDS = float(os.getenv("REVIEW_TIMEOUT_SECONDS", "300"))
REVIEW_DRAFT_PRS = os.getenv("REVIEW_DRAFT_PRS", "false").lower() == "true"
COMMENT_MAX_ATTEMPTS = int(os.getenv("COMMENT_MAX_ATTEMPTS", "3"))
GITHUB_MAX_ATTEMPTS = int(os.getenv("GITHUB_MAX_ATTEMPTS", "3"))
GITHUB_RETRY_BASE_DELAY = float(os.getenv("GITHUB_RETRY_BASE_DELAY", "1.0"))

MAX_CONCURRENT_JOBS = int(os.getenv("MAX_CONCURRENT_JOBS", "3"))
SHUTDOWN_TIMEOUT_SECONDS = float(os.getenv("SHUTDOWN_TIMEOUT_SECONDS", "30"))
JOB_STALE_SECONDS = float(os.getenv("JOB_STALE_SECONDS", "3600"))

SKIP_CODE_CHUNKS = os.getenv("SKIP_CODE_CHUNKS", "false").lower() == "true"
CONTEXT_CHUNK_LIMIT = int(os.getenv("CONTEXT_CHUNK_LIMIT", "10"))
CONTEXT_MIN_SIMILARITY = float(os.getenv("CONTEXT_MIN_SIMILARITY", "0.6"))

INDEX_BATCH_SIZE = int(os.getenv("INDEX_BATCH_SIZE", "20"))
EMBED_TOKENS_PER_MINUTE = int(os.getenv("EMBED_TOKENS_PER_MINUTE", "1000000"))
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "3000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Configure root logging for the API and worker processes."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )
