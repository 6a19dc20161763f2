import os


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    # ── Elasticsearch ─────────────────────────────────────────────────────────
    es_host = os.getenv("ES_HOST", "http://localhost:9200")
    es_username = os.getenv("ES_USERNAME", "")
    es_password = os.getenv("ES_PASSWORD", "")
    es_request_timeout = float(os.getenv("ES_REQUEST_TIMEOUT", "30"))
    es_max_retries = int(os.getenv("ES_MAX_RETRIES", "3"))
    es_verify_certs = _env_bool("ES_VERIFY_CERTS", "true")
    index_prefix = os.getenv("ES_INDEX_PREFIX", "college_media")

    # ── Index sync ────────────────────────────────────────────────────────────
    sync_interval_seconds = float(os.getenv("SYNC_INTERVAL_SECONDS", "300"))
    sync_batch_size = int(os.getenv("SYNC_BATCH_SIZE", "100"))
    sync_on_startup = _env_bool("SYNC_ON_STARTUP", "true")

    # SQLAlchemy URL of the primary datastore; empty selects the in-memory reader
    datastore_url = os.getenv("DATASTORE_URL", "")

    # ── Search history tracking ───────────────────────────────────────────────
    history_queue_size = int(os.getenv("HISTORY_QUEUE_SIZE", "1000"))

    # ── Auth ──────────────────────────────────────────────────────────────────
    jwt_secret_key = os.getenv("JWT_SECRET_KEY", "")
    jwt_algorithm = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_issuer = os.getenv("JWT_ISSUER", "college-media-api")
    jwt_audience = os.getenv("JWT_AUDIENCE", "college-media-users")

    # ── API ───────────────────────────────────────────────────────────────────
    log_level = os.getenv("LOG_LEVEL", "INFO")
    api_host = os.getenv("API_HOST", "0.0.0.0")
    api_port = int(os.getenv("API_PORT", "8000"))

    def get_elasticsearch_config(self) -> dict:
        """Keyword arguments for AsyncElasticsearch"""
        kwargs = {
            "hosts": [self.es_host],
            "request_timeout": self.es_request_timeout,
            "max_retries": self.es_max_retries,
            "retry_on_timeout": True,
        }
        if self.es_username:
            kwargs["basic_auth"] = (self.es_username, self.es_password)
        if self.es_host.startswith("https://"):
            kwargs["verify_certs"] = self.es_verify_certs
        return kwargs


config = Config()
