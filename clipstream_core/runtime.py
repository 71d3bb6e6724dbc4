"""Process-wide wiring for the pipeline.

Nothing is built at import time. :meth:`PipelineRuntime.build` creates the
catalog, queue, index and orchestrator from a :class:`Config`,
:meth:`PipelineRuntime.attach` reloads persisted embeddings and recovers
jobs, and :meth:`PipelineRuntime.shutdown` drains in-flight work.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from clipstream_core import __version__
from clipstream_core.alignment.relate import AlignmentRules, RelationshipFinder
from clipstream_core.config import Config, get_config
from clipstream_core.embeddings.edges import EdgeLog, InMemoryEdgeLog, SqliteEdgeLog
from clipstream_core.embeddings.store import EmbeddingStore
from clipstream_core.embeddings.stub import get_video_embedder
from clipstream_core.ingestion.stages import (
    AnalyzeExecutor,
    DuplicateCheckExecutor,
    TranscodeExecutor,
    TranscribeExecutor,
)
from clipstream_core.logging import get_logger
from clipstream_core.pipeline.executors import ExecutorRegistry
from clipstream_core.pipeline.lease import LeaseManager
from clipstream_core.pipeline.orchestrator import Orchestrator
from clipstream_core.pipeline.retry import RetryPolicy
from clipstream_core.pipeline.store import (
    InMemoryVideoStore,
    SqliteVideoStore,
    VideoStore,
)
from clipstream_core.pipeline.worker import WorkerPool
from clipstream_core.queue import InMemoryJobQueue, SqliteJobQueue
from clipstream_core.queue.types import JobQueue
from clipstream_core.similarity.index import BruteForceIndex
from clipstream_core.storage.object_store import ObjectStore

logger = get_logger(__name__)


def build_executors(
    config: Config,
    object_store: ObjectStore,
    embeddings: EmbeddingStore,
    finder: RelationshipFinder,
) -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register(
        DuplicateCheckExecutor(
            object_store,
            mode=config.fingerprint_mode,
            chunk_bytes=config.fingerprint_chunk_bytes,
            max_raw_bytes=config.max_raw_bytes,
        )
    )
    registry.register(
        TranscodeExecutor(
            object_store,
            config.transcode_qualities,
            max_raw_bytes=config.max_raw_bytes,
        )
    )
    registry.register(
        TranscribeExecutor(
            object_store,
            enabled=config.transcribe_enabled,
            use_real_models=config.use_real_models,
            max_raw_bytes=config.max_raw_bytes,
        )
    )
    registry.register(
        AnalyzeExecutor(
            object_store,
            embeddings,
            get_video_embedder(config.embedding_dim, config.use_real_models),
            finder,
            window_seconds=config.embedding_window_seconds,
            max_raw_bytes=config.max_raw_bytes,
        )
    )
    return registry


@dataclass
class PipelineRuntime:
    config: Config
    object_store: ObjectStore
    videos: VideoStore
    queue: JobQueue
    leases: LeaseManager
    embeddings: EmbeddingStore
    finder: RelationshipFinder
    orchestrator: Orchestrator
    version: str = __version__
    _workers: WorkerPool | None = field(default=None, repr=False)

    @classmethod
    def build(
        cls,
        config: Config | None = None,
        *,
        executors: ExecutorRegistry | None = None,
        in_memory: bool = False,
        now_fn: Callable[[], float] | None = None,
    ) -> "PipelineRuntime":
        config = config or get_config()
        object_store = ObjectStore.from_base_uri(config.storage_root)
        videos: VideoStore
        queue: JobQueue
        edges: EdgeLog
        if in_memory:
            videos = InMemoryVideoStore()
            queue = InMemoryJobQueue()
            edges = InMemoryEdgeLog()
        else:
            videos = SqliteVideoStore(config.catalog_path)
            queue = SqliteJobQueue(config.catalog_path)
            edges = SqliteEdgeLog(config.catalog_path)

        # Real models report their own dimension.
        dim = None if config.use_real_models else config.embedding_dim
        index = BruteForceIndex(metric=config.similarity_metric, dim=dim)
        embeddings = EmbeddingStore(
            index,
            edges,
            object_store=object_store,
            dim=dim,
            window_seconds=config.embedding_window_seconds,
        )
        finder = RelationshipFinder(
            embeddings,
            AlignmentRules.from_config(config),
            similarity_threshold=config.similarity_threshold,
            shortlist_k=config.shortlist_k,
        )
        if executors is None:
            executors = build_executors(config, object_store, embeddings, finder)
        leases = LeaseManager(config.lease_ttl_seconds, now_fn=now_fn)
        orchestrator = Orchestrator(
            videos,
            queue,
            leases,
            executors,
            embeddings,
            RetryPolicy(
                max_attempts=config.max_stage_attempts,
                base_delay_seconds=config.retry_base_delay_seconds,
                max_delay_seconds=config.retry_max_delay_seconds,
            ),
            visibility_timeout=config.queue_visibility_timeout_seconds,
            lease_retry_delay=config.lease_retry_delay_seconds,
            now_fn=now_fn,
        )
        return cls(
            config=config,
            object_store=object_store,
            videos=videos,
            queue=queue,
            leases=leases,
            embeddings=embeddings,
            finder=finder,
            orchestrator=orchestrator,
        )

    def attach(self) -> int:
        self.embeddings.load_all()
        recovered = self.orchestrator.start()
        logger.info(
            "Pipeline runtime attached",
            extra={"recovered_jobs": recovered},
        )
        return recovered

    def start_workers(self, worker_count: int | None = None) -> WorkerPool:
        if self._workers is None:
            self._workers = WorkerPool(
                self.orchestrator,
                worker_count or self.config.worker_count,
                self.config.worker_poll_interval_seconds,
            )
        self._workers.start()
        return self._workers

    def shutdown(self, timeout: float | None = None) -> bool:
        drained = self.orchestrator.shutdown(timeout)
        if self._workers is not None:
            self._workers.stop(timeout)
            self._workers = None
        return drained

    def __enter__(self) -> "PipelineRuntime":
        self.attach()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.shutdown()
