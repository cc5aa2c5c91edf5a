"""Configuration settings for the CV Analytics event pipeline."""

import json
import os


def get_postgres_uri():
    """Get PostgreSQL connection URI from environment variables."""
    host = os.environ.get("DB_HOST", "localhost")
    port = 5433 if host == "localhost" else 5432
    password = os.environ.get("DB_PASSWORD", "cv_analytics_pass")
    user = os.environ.get("DB_USER", "cv_analytics_user")
    db_name = os.environ.get("DB_NAME", "cv_analytics_db")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def get_redis_host_and_port():
    """Get Redis connection details from environment variables."""
    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", "6379"))
    return dict(host=host, port=port)


def get_api_url():
    """Get ingestion API URL from environment variables."""
    host = os.environ.get("API_HOST", "localhost")
    port = int(os.environ.get("API_PORT", "8000"))
    return f"http://{host}:{port}"


def get_webhook_secrets():
    """
    Get webhook signing secrets.

    Returns (primary, secondary). The secondary secret is only set while a
    rotation is in progress.
    """
    primary = os.environ.get("WEBHOOK_SECRET", "")
    secondary = os.environ.get("WEBHOOK_SECRET_PREVIOUS") or None
    return primary, secondary


def get_signature_header():
    """Get header names carrying the signature and the sender delivery id."""
    return dict(
        signature=os.environ.get("WEBHOOK_SIGNATURE_HEADER", "X-Hub-Signature-256"),
        delivery_id=os.environ.get("WEBHOOK_DELIVERY_HEADER", "X-GitHub-Delivery"),
        tolerance_seconds=int(os.environ.get("WEBHOOK_TOLERANCE_SECONDS", "300")),
    )


def get_queue_policy():
    """Get durable queue policy settings."""
    return dict(
        visibility_timeout_seconds=float(os.environ.get("QUEUE_VISIBILITY_TIMEOUT", "30")),
        max_receive_count=int(os.environ.get("QUEUE_MAX_RECEIVE_COUNT", "3")),
        max_batch_size=int(os.environ.get("QUEUE_MAX_BATCH_SIZE", "10")),
        dedup_window_seconds=float(os.environ.get("QUEUE_DEDUP_WINDOW", "300")),
    )


def get_change_stream_config():
    """Get change stream retention and key settings."""
    return dict(
        retention_hours=float(os.environ.get("CHANGE_RETENTION_HOURS", "24")),
        prefix=os.environ.get("CHANGE_STREAM_PREFIX", "changes"),
        checkpoint_prefix=os.environ.get("CHANGE_CHECKPOINT_PREFIX", "checkpoints"),
        sweep_interval_seconds=float(os.environ.get("CHANGE_SWEEP_INTERVAL", "5")),
    )


DEFAULT_ROUTING_RULES = [
    {
        "name": "all-added-events",
        "destinations": ["analytics-aggregates"],
        "match": [{"field": "change_type", "equals": "added"}],
    },
]


def get_routing_rules():
    """
    Get routing rules as a list of dicts.

    ROUTING_RULES holds inline JSON, ROUTING_RULES_FILE points to a JSON file.
    """
    inline = os.environ.get("ROUTING_RULES")
    if inline:
        return json.loads(inline)

    path = os.environ.get("ROUTING_RULES_FILE")
    if path:
        with open(path) as f:
            return json.load(f)

    return DEFAULT_ROUTING_RULES


def get_processor_config():
    """Get batch processor settings."""
    return dict(
        queue_name=os.environ.get("PROCESSOR_QUEUE", "analytics-aggregates"),
        budget_seconds=float(os.environ.get("PROCESSOR_BUDGET_SECONDS", "5")),
        max_attempts=int(os.environ.get("PROCESSOR_MAX_ATTEMPTS", "5")),
        wait_time_seconds=float(os.environ.get("PROCESSOR_WAIT_SECONDS", "10")),
    )


def get_realtime_config():
    """Get real-time publisher settings."""
    return dict(
        channel=os.environ.get("REALTIME_CHANNEL", "analytics:aggregates"),
        snapshot_size=int(os.environ.get("REALTIME_SNAPSHOT_SIZE", "20")),
    )


def get_correlation_paths():
    """Get dotted payload paths tried in order to find the correlation id."""
    raw = os.environ.get("CORRELATION_PATHS")
    if raw:
        return [p.strip() for p in raw.split(",") if p.strip()]
    return ["issue.number", "pull_request.number", "correlationId", "requestId"]
