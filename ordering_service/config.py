"""
config.py — Runtime Configuration for the Ordering Service

All settings are read once from environment variables, with defaults that work
for a local single-node setup (SQLite file, RabbitMQ on localhost, mock catalog
on port 8002).
"""

import os

# Persistence
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///ordering.db")

# Catalog Service (REST)
CATALOG_SERVICE_URL = os.environ.get("CATALOG_SERVICE_URL", "http://localhost:8002")
CATALOG_TIMEOUT_SECONDS = float(os.environ.get("CATALOG_TIMEOUT_SECONDS", "5"))

# Notification queue (RabbitMQ)
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "guest")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "guest")
NOTIFICATION_QUEUE = os.environ.get("NOTIFICATION_QUEUE", "notifications.outbound")
NOTIFIER_TIMEOUT_SECONDS = float(os.environ.get("NOTIFIER_TIMEOUT_SECONDS", "5"))

# Stock alert sweep
ALERT_SWEEP_INTERVAL_MINUTES = float(os.environ.get("ALERT_SWEEP_INTERVAL_MINUTES", "60"))
ALERT_SCHEDULER_ENABLED = os.environ.get("ALERT_SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")

# Public base URL used to build order tracking links
BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000")

LOG_FILE = os.environ.get("LOG_FILE", "ordering_service.log")
