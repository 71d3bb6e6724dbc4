import os
from dataclasses import dataclass
from functools import lru_cache

from clipstream_core.storage.paths import has_uri_scheme

_METRICS = {"euclidean", "cosine"}
_FINGERPRINT_MODES = {"full", "sampled"}


@dataclass(frozen=True)
class Config:
    storage_root: str
    catalog_path: str
    env: str
    log_level: str
    max_stage_attempts: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    lease_ttl_seconds: float
    lease_retry_delay_seconds: float
    queue_visibility_timeout_seconds: float
    worker_count: int
    worker_poll_interval_seconds: float
    fingerprint_mode: str
    fingerprint_chunk_bytes: int
    max_raw_bytes: int
    embedding_dim: int
    embedding_window_seconds: float
    similarity_metric: str
    similarity_threshold: float
    shortlist_k: int
    alignment_metric: str
    trimmed_cost_threshold: float
    trimmed_min_span_ratio: float
    pov_cost_threshold: float
    pov_duration_tolerance: float
    pov_max_deviation_ratio: float
    transcode_qualities: tuple[str, ...]
    transcribe_enabled: bool
    use_real_models: bool

    def storage_is_remote(self) -> bool:
        return has_uri_scheme(self.storage_root) and not self.storage_root.startswith(
            "file://"
        )

    @classmethod
    def from_env(cls) -> "Config":
        missing: list[str] = []

        def require(name: str) -> str:
            value = os.getenv(name)
            if value is None or value == "":
                missing.append(name)
                return ""
            return value

        storage_root = require("STORAGE_ROOT")
        env = require("ENV")
        log_level = require("LOG_LEVEL")
        catalog_path = os.getenv(
            "CATALOG_PATH",
            "./clipstream_data/catalog.db",
        )

        max_stage_attempts = _parse_int(
            "MAX_STAGE_ATTEMPTS", os.getenv("MAX_STAGE_ATTEMPTS", "5")
        )
        if max_stage_attempts < 1:
            raise ValueError("MAX_STAGE_ATTEMPTS must be at least 1")
        retry_base_delay_seconds = _parse_float(
            os.getenv("RETRY_BASE_DELAY_SECONDS", "2.0")
        )
        retry_max_delay_seconds = _parse_float(
            os.getenv("RETRY_MAX_DELAY_SECONDS", "300.0")
        )
        if retry_max_delay_seconds < retry_base_delay_seconds:
            raise ValueError(
                "RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS"
            )
        lease_ttl_seconds = _parse_float(os.getenv("LEASE_TTL_SECONDS", "900"))
        lease_retry_delay_seconds = _parse_float(
            os.getenv("LEASE_RETRY_DELAY_SECONDS", "1.0")
        )
        queue_visibility_timeout_seconds = _parse_float(
            os.getenv("QUEUE_VISIBILITY_TIMEOUT_SECONDS", "900")
        )
        worker_count = _parse_int("WORKER_COUNT", os.getenv("WORKER_COUNT", "4"))
        worker_poll_interval_seconds = _parse_float(
            os.getenv("WORKER_POLL_INTERVAL_SECONDS", "1.0")
        )

        fingerprint_mode = os.getenv("FINGERPRINT_MODE", "full").strip().lower()
        if fingerprint_mode not in _FINGERPRINT_MODES:
            allowed = ", ".join(sorted(_FINGERPRINT_MODES))
            raise ValueError(f"FINGERPRINT_MODE must be one of: {allowed}")
        fingerprint_chunk_bytes = _parse_int(
            "FINGERPRINT_CHUNK_BYTES",
            os.getenv("FINGERPRINT_CHUNK_BYTES", str(1024 * 1024)),
        )
        max_raw_bytes = _parse_int(
            "MAX_RAW_BYTES", os.getenv("MAX_RAW_BYTES", "4000000000")
        )

        embedding_dim = _parse_int("EMBEDDING_DIM", os.getenv("EMBEDDING_DIM", "512"))
        embedding_window_seconds = _parse_float(
            os.getenv("EMBEDDING_WINDOW_SECONDS", "1.0")
        )
        if embedding_window_seconds <= 0:
            raise ValueError("EMBEDDING_WINDOW_SECONDS must be positive")
        similarity_metric = _parse_metric(
            "SIMILARITY_METRIC", os.getenv("SIMILARITY_METRIC", "cosine")
        )
        similarity_threshold = _parse_float(os.getenv("SIMILARITY_THRESHOLD", "0.15"))
        shortlist_k = _parse_int("SHORTLIST_K", os.getenv("SHORTLIST_K", "10"))
        alignment_metric = _parse_metric(
            "ALIGNMENT_METRIC", os.getenv("ALIGNMENT_METRIC", "cosine")
        )
        trimmed_cost_threshold = _parse_float(
            os.getenv("TRIMMED_COST_THRESHOLD", "0.1")
        )
        trimmed_min_span_ratio = _parse_float(
            os.getenv("TRIMMED_MIN_SPAN_RATIO", "0.5")
        )
        pov_cost_threshold = _parse_float(os.getenv("POV_COST_THRESHOLD", "0.25"))
        pov_duration_tolerance = _parse_float(
            os.getenv("POV_DURATION_TOLERANCE", "0.1")
        )
        pov_max_deviation_ratio = _parse_float(
            os.getenv("POV_MAX_DEVIATION_RATIO", "0.2")
        )
        transcode_qualities = _parse_list(
            os.getenv("TRANSCODE_QUALITIES", "1080p,720p,480p")
        )
        for quality in transcode_qualities:
            if not quality.endswith("p") or not quality[:-1].isdigit():
                raise ValueError(f"Invalid TRANSCODE_QUALITIES entry: {quality}")
        transcribe_enabled = _parse_bool(os.getenv("TRANSCRIBE_ENABLED"), True)
        use_real_models = os.getenv("USE_REAL_MODELS", "0") == "1"

        if missing:
            missing_str = ", ".join(missing)
            raise ValueError(f"Missing required env vars: {missing_str}")

        return cls(
            storage_root=storage_root,
            catalog_path=catalog_path,
            env=env,
            log_level=log_level,
            max_stage_attempts=max_stage_attempts,
            retry_base_delay_seconds=retry_base_delay_seconds,
            retry_max_delay_seconds=retry_max_delay_seconds,
            lease_ttl_seconds=lease_ttl_seconds,
            lease_retry_delay_seconds=lease_retry_delay_seconds,
            queue_visibility_timeout_seconds=queue_visibility_timeout_seconds,
            worker_count=max(1, worker_count),
            worker_poll_interval_seconds=worker_poll_interval_seconds,
            fingerprint_mode=fingerprint_mode,
            fingerprint_chunk_bytes=max(4096, fingerprint_chunk_bytes),
            max_raw_bytes=max_raw_bytes,
            embedding_dim=embedding_dim,
            embedding_window_seconds=embedding_window_seconds,
            similarity_metric=similarity_metric,
            similarity_threshold=similarity_threshold,
            shortlist_k=max(1, shortlist_k),
            alignment_metric=alignment_metric,
            trimmed_cost_threshold=trimmed_cost_threshold,
            trimmed_min_span_ratio=trimmed_min_span_ratio,
            pov_cost_threshold=pov_cost_threshold,
            pov_duration_tolerance=pov_duration_tolerance,
            pov_max_deviation_ratio=pov_max_deviation_ratio,
            transcode_qualities=transcode_qualities,
            transcribe_enabled=transcribe_enabled,
            use_real_models=use_real_models,
        )


def _parse_list(value: str) -> tuple[str, ...]:
    items = []
    for raw in value.split(","):
        cleaned = raw.strip().lower()
        if cleaned:
            items.append(cleaned)
    return tuple(items)


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _parse_float(value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid float value: {value}") from exc


def _parse_metric(name: str, value: str) -> str:
    metric = value.strip().lower()
    if metric not in _METRICS:
        allowed = ", ".join(sorted(_METRICS))
        raise ValueError(f"{name} must be one of: {allowed}")
    return metric


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.from_env()
