from prometheus_client import Counter, Gauge, Histogram


# Stream processing metrics
entries_processed_total = Counter(
    "skystream_entries_processed_total",
    "Log entries processed, by stage and outcome",
    ["stage", "outcome"],
)

entries_appended_total = Counter(
    "skystream_entries_appended_total",
    "Entries appended to a durable log",
    ["stream"],
)

processing_errors_total = Counter(
    "skystream_errors_total",
    "Total processing errors",
    ["stage", "error_type"],
)

processing_duration_seconds = Histogram(
    "skystream_processing_duration_seconds",
    "Time taken to process an individual log entry",
    ["stage"],
    buckets=[0.01, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 10.0],
)

# Model metrics
model_inference_duration_seconds = Histogram(
    "skystream_model_inference_duration_seconds",
    "Time taken for model inference",
    ["model"],
    buckets=[0.01, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 10.0],
)

classifier_confidence = Histogram(
    "skystream_classifier_confidence",
    "Best zero-shot score per classified post",
    buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
)

topics_extracted_total = Counter(
    "skystream_topics_extracted_total",
    "Topics extracted by the LLM across all posts",
)

# Connection status
nats_connected = Gauge(
    "skystream_nats_connected",
    "NATS connection status (1=connected, 0=disconnected)",
)

redis_connected = Gauge(
    "skystream_redis_connected",
    "Redis connection status (1=connected, 0=disconnected)",
)

firehose_connected = Gauge(
    "skystream_firehose_connected",
    "Firehose WebSocket status (1=connected, 0=disconnected)",
)

# Queue metrics
message_queue_size = Gauge(
    "skystream_message_queue_size",
    "Entries pending delivery to a consumer group",
    ["stage"],
)

# Bot metrics
bot_replies_total = Counter(
    "skystream_bot_replies_total",
    "Mentions handled by the bot, by outcome",
    ["outcome"],
)

semantic_cache_lookups_total = Counter(
    "skystream_semantic_cache_lookups_total",
    "Semantic cache lookups, by result",
    ["result"],
)

router_matches_total = Counter(
    "skystream_router_matches_total",
    "Clauses matched by the semantic router, by route",
    ["route"],
)
