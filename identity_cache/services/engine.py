"""
Wires the directory components together around one store handle.

Both the API process and the worker build exactly one engine, start it once
(schema migrations plus the startup sequence) and close it on shutdown.
"""

from identity_cache.config import settings
from identity_cache.db.pool import DatabasePoolManager
from identity_cache.infrastructure.observability.logging import get_logger
from identity_cache.repositories.directory_store import DirectoryStore
from identity_cache.services.deduplication_service import DeduplicationService
from identity_cache.services.directory_service import DirectoryService
from identity_cache.services.maintenance_service import MaintenanceCoordinator
from identity_cache.services.remote_authority_client import (
    RemoteAuthorityClient,
    create_remote_authority_client,
)
from identity_cache.services.response_cache import ResponseCache
from identity_cache.services.search_ranker import SearchRanker
from identity_cache.services.upsert_pipeline import UpsertPipeline
from identity_cache.services.verification_service import VerificationService

logger = get_logger(__name__)


class IdentityCacheEngine:
    def __init__(
        self,
        store: DirectoryStore,
        client: RemoteAuthorityClient | None = None,
        cache: ResponseCache | None = None,
        current_user_id: str | None = None,
    ):
        self.store = store
        self.cache = cache or ResponseCache()
        self.client = client
        self.verifier = VerificationService(store, client, current_user_id=current_user_id)
        self.pipeline = UpsertPipeline(store, self.verifier, client)
        self.dedup = DeduplicationService(store)
        self.directory = DirectoryService(store, SearchRanker(), self.cache)
        self.maintenance = MaintenanceCoordinator(store, self.dedup, self.verifier, self.pipeline)

    async def start(self, run_startup_sequence: bool = True) -> dict:
        version = await self.store.initialize()
        report = {"schema_version": version}
        if run_startup_sequence:
            report["startup"] = await self.maintenance.run_startup_sequence()
        return report

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
        await self.store.close()


def build_engine(pool: DatabasePoolManager) -> IdentityCacheEngine:
    cache = ResponseCache()
    return IdentityCacheEngine(
        DirectoryStore(pool),
        client=create_remote_authority_client(cache),
        cache=cache,
        current_user_id=settings.CURRENT_USER_ID,
    )
