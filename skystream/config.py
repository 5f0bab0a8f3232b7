import os
from dataclasses import dataclass, field
from typing import List


def _get_candidate_labels() -> List[str]:
    """Parse zero-shot candidate labels from environment variable.

    The reference deployment filters on a single label ("Politics"); an
    AI-focused deployment uses "AI". Any comma-separated list works.
    """
    labels = os.getenv("CANDIDATE_LABELS", "Politics").split(",")
    return [label.strip() for label in labels if label.strip()]


@dataclass(frozen=True)
class Settings:
    # NATS JetStream (durable logs)
    NATS_URL: str = os.getenv("NATS_URL", "nats://localhost:4222")
    RAW_STREAM: str = os.getenv("RAW_STREAM", "raw")
    FILTERED_STREAM: str = os.getenv("FILTERED_STREAM", "filtered")
    RAW_SUBJECT: str = os.getenv("RAW_SUBJECT", "posts.raw")
    FILTERED_SUBJECT: str = os.getenv("FILTERED_SUBJECT", "posts.filtered")
    STREAM_MAX_MSGS: int = int(os.getenv("STREAM_MAX_MSGS", 1_000_000))  # Oldest entries are discarded past this
    NUM_STREAM_REPLICAS: int = int(os.getenv("NUM_STREAM_REPLICAS", 1))

    # Consumer tuning
    ACK_WAIT_SECONDS: int = int(os.getenv("ACK_WAIT_SECONDS", 60))  # How long JetStream waits before redelivery
    MAX_DELIVER: int = int(os.getenv("MAX_DELIVER", 5))  # Max redeliver attempts
    MAX_ACK_PENDING: int = int(os.getenv("MAX_ACK_PENDING", 100))  # Max unacked messages in-flight per group
    DUPLICATE_WINDOW_SECONDS: int = int(os.getenv("DUPLICATE_WINDOW_SECONDS", 600))  # 10 minutes
    FETCH_TIMEOUT_SECONDS: float = float(os.getenv("FETCH_TIMEOUT_SECONDS", 5.0))
    BATCH_SIZE: int = int(os.getenv("BATCH_SIZE", 5))

    # Stage topology
    FILTER_GROUP: str = os.getenv("FILTER_GROUP", "filter-group")
    EMBED_GROUP: str = os.getenv("EMBED_GROUP", "embeddings-group")
    TOPIC_GROUP: str = os.getenv("TOPIC_GROUP", "topic-extraction-group")
    FILTER_WORKERS: int = int(os.getenv("FILTER_WORKERS", 4))
    EMBED_WORKERS: int = int(os.getenv("EMBED_WORKERS", 4))
    TOPIC_WORKERS: int = int(os.getenv("TOPIC_WORKERS", 4))

    # Deduplication
    FILTER_BLOOM: str = os.getenv("FILTER_BLOOM", "filter-dedup-bf")
    EMBED_BLOOM: str = os.getenv("EMBED_BLOOM", "embeddings-dedup-bf")
    TOPIC_BLOOM: str = os.getenv("TOPIC_BLOOM", "topic-extraction-dedup-bf")
    BOT_BLOOM: str = os.getenv("BOT_BLOOM", "processed-posts-bf")
    BLOOM_CAPACITY: int = int(os.getenv("BLOOM_CAPACITY", 1_000_000))
    BLOOM_ERROR_RATE: float = float(os.getenv("BLOOM_ERROR_RATE", 0.01))

    # Redis Stack (documents, vectors, probabilistic structures)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Firehose
    FIREHOSE_URL: str = os.getenv(
        "FIREHOSE_URL",
        "wss://jetstream2.us-east.bsky.network/subscribe?wantedCollections=app.bsky.feed.post",
    )
    RECONNECT_INITIAL_DELAY: float = float(os.getenv("RECONNECT_INITIAL_DELAY", 2.0))
    RECONNECT_MAX_DELAY: float = float(os.getenv("RECONNECT_MAX_DELAY", 30.0))

    # Zero-shot classification model
    MODEL_NAME: str = os.getenv("MODEL_NAME", "richardr1126/roberta-base-zeroshot-v2.0-c-ONNX")
    MODEL_FILE_NAME: str = os.getenv("MODEL_FILE_NAME", "model_quantized.onnx")
    MODEL_CACHE_DIR: str = os.getenv("MODEL_CACHE_DIR", "/var/cache/models")
    MAX_SEQUENCE_LENGTH: int = int(os.getenv("MAX_SEQUENCE_LENGTH", 512))
    CLASSIFIER_THRESHOLD: float = float(os.getenv("CLASSIFIER_THRESHOLD", 0.90))
    MULTI_LABEL: bool = os.getenv("MULTI_LABEL", "true").lower() == "true"
    HYPOTHESIS_TEMPLATE: str = os.getenv("HYPOTHESIS_TEMPLATE", "This example is {}.")
    CANDIDATE_LABELS: List[str] = field(default_factory=_get_candidate_labels)

    # Sentence embeddings for posts
    EMBEDDING_MODEL_NAME: str = os.getenv("EMBEDDING_MODEL_NAME", "sentence-transformers/all-MiniLM-L6-v2")
    EMBEDDING_DIM: int = int(os.getenv("EMBEDDING_DIM", 384))
    INFERENCE_THREADS: int = int(os.getenv("INFERENCE_THREADS", 2))

    # LLM provider (credentials come from OPENAI_API_KEY)
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    LLM_BASE_URL: str = os.getenv("LLM_BASE_URL", "")
    LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", 60.0))
    ROUTER_EMBEDDING_MODEL: str = os.getenv("ROUTER_EMBEDDING_MODEL", "text-embedding-3-large")
    ROUTER_EMBEDDING_DIM: int = int(os.getenv("ROUTER_EMBEDDING_DIM", 3072))
    TOPIC_DOMAIN: str = os.getenv("TOPIC_DOMAIN", "ai")

    # Topic aggregation
    TOPK_K: int = int(os.getenv("TOPK_K", 15))
    TOPK_WIDTH: int = int(os.getenv("TOPK_WIDTH", 3000))
    TOPK_DEPTH: int = int(os.getenv("TOPK_DEPTH", 10))
    TOPK_DECAY: float = float(os.getenv("TOPK_DECAY", 0.9))
    CMS_WIDTH: int = int(os.getenv("CMS_WIDTH", 3000))
    CMS_DEPTH: int = int(os.getenv("CMS_DEPTH", 10))
    TOPIC_AGGREGATOR: str = os.getenv("TOPIC_AGGREGATOR", "topk")  # topk, cms or both
    TOPIC_UNIVERSE_KEY: str = os.getenv("TOPIC_UNIVERSE_KEY", "topics")

    # Bot
    BSKY_HOST: str = os.getenv("BSKY_HOST", "https://bsky.social")
    BSKY_IDENTIFIER: str = os.getenv("BSKY_IDENTIFIER", "")
    BSKY_PASSWORD: str = os.getenv("BSKY_PASSWORD", "")
    BOT_HANDLE: str = os.getenv("BOT_HANDLE", "")
    BOT_INTERVAL_SECONDS: float = float(os.getenv("BOT_INTERVAL_SECONDS", 30.0))
    BOT_MAX_MENTIONS: int = int(os.getenv("BOT_MAX_MENTIONS", 15))
    BOT_LOOKBACK_HOURS: int = int(os.getenv("BOT_LOOKBACK_HOURS", 1))
    REPLY_MAX_CHARS: int = int(os.getenv("REPLY_MAX_CHARS", 300))
    SEMANTIC_CACHE_THRESHOLD: float = float(os.getenv("SEMANTIC_CACHE_THRESHOLD", 0.2))
    SUMMARY_MAX_POSTS: int = int(os.getenv("SUMMARY_MAX_POSTS", 100))

    # Performance
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", 3))
    RETRY_DELAY: float = float(os.getenv("RETRY_DELAY", 1.0))

    # Service
    SERVICE_NAME: str = os.getenv("SERVICE_NAME", "skystream")

    # Health/metrics
    HEALTH_CHECK_PORT: int = int(os.getenv("HEALTH_CHECK_PORT", 8080))
    METRICS_ENABLED: bool = os.getenv("METRICS_ENABLED", "true").lower() == "true"

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "json")


settings = Settings()
