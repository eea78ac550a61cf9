"""Service context: every long-lived component, built once at startup.

In main.py a single instance is created in the lifespan handler and stored
on ``app.state.context``. Routes reach it through ``get_context``.
"""
import logging
from dataclasses import dataclass

from fastapi import Request

from .access import RateLimiter
from .config import AppConfig
from .files.index import MetadataIndex
from .files.policy import MimePolicy
from .files.service import FileService
from .files.storage import BlobStorage
from .scheduler import ExpirationScheduler

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    config: AppConfig
    policy: MimePolicy
    storage: BlobStorage
    index: MetadataIndex
    files: FileService
    rate_limiter: RateLimiter
    scheduler: ExpirationScheduler

    @classmethod
    def build(cls, config: AppConfig) -> "ServiceContext":
        policy = MimePolicy(config.mime.allowed)
        index = MetadataIndex(config.storage.db_path)
        storage = BlobStorage(
            upload_dir=config.storage.upload_dir,
            max_size_bytes=config.storage.max_file_size_bytes,
            id_taken=lambda file_id: index.get(file_id) is not None,
        )
        storage.purge_staging()
        files = FileService(
            policy=policy,
            storage=storage,
            index=index,
            base_url=config.server.base_url,
            default_retention_seconds=config.retention.default_seconds,
        )
        rate_limiter = RateLimiter(
            limit=config.rate_limit.requests,
            window_seconds=config.rate_limit.window_seconds,
        )
        scheduler = ExpirationScheduler(
            index=index,
            storage=storage,
            interval_seconds=config.retention.cleanup_interval_seconds,
        )
        logger.info(
            "Service context ready (upload_dir=%s, db=%s, allowed_mime=%s)",
            config.storage.upload_dir,
            config.storage.db_path,
            ",".join(policy.rules),
        )
        return cls(
            config=config,
            policy=policy,
            storage=storage,
            index=index,
            files=files,
            rate_limiter=rate_limiter,
            scheduler=scheduler,
        )

    def close(self) -> None:
        self.index.close()


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context
