"""
Cross-Seed HTTP API
FastAPI application exposing configuration, manual scans, status, history
and cache housekeeping for each torrent client instance.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings

from .cache import TorrentCache
from .exceptions import ScanInProgressError, ValidationError
from .logging_config import setup_logging
from .orchestrator import CrossSeedOrchestrator
from .persistence import (
    Decision,
    InstanceRecord,
    IntegrationRecord,
    PersistenceManager,
    ScanConfig,
    Searchee,
)
from .retry import RetryConfig
from .scheduler import CrossSeedScheduler

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080
    api_key: Optional[str] = None

    # Storage
    data_path: str = "./data"
    database_file: str = "cross_seed.db"

    # Outbound requests
    request_timeout: float = 30.0
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Scheduling and housekeeping
    scheduler_enabled: bool = True
    cache_max_age_days: int = 30

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = "text"  # "text" or "json"
    log_max_size_mb: int = 10
    log_backup_count: int = 5

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def database_path(self) -> str:
        return os.path.join(self.data_path, self.database_file)

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            initial_delay=self.retry_initial_delay,
            max_delay=self.retry_max_delay,
        )


# =============================================================================
# Request Models
# =============================================================================


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InstanceCreate(_CamelModel):
    label: str
    url: str
    username: str = ""
    password: str = ""


class IntegrationCreate(_CamelModel):
    label: str
    url: str
    api_key: str = Field("", alias="apiKey")


class ConfigUpdate(_CamelModel):
    enabled: Optional[bool] = None
    interval_hours: Optional[int] = Field(None, alias="intervalHours")
    dry_run: Optional[bool] = Field(None, alias="dryRun")
    category_suffix: Optional[str] = Field(None, alias="categorySuffix")
    tag: Optional[str] = None
    skip_recheck: Optional[bool] = Field(None, alias="skipRecheck")
    integration_id: Optional[int] = Field(None, alias="integrationId")


class ScanRequest(_CamelModel):
    force: bool = False
    dry_run: Optional[bool] = Field(None, alias="dryRun")


# =============================================================================
# Serialization Helpers
# =============================================================================


def config_to_dict(config: ScanConfig) -> Dict[str, Any]:
    return {
        "instanceId": config.instance_id,
        "enabled": config.enabled,
        "intervalHours": config.interval_hours,
        "dryRun": config.dry_run,
        "categorySuffix": config.category_suffix,
        "tag": config.tag,
        "skipRecheck": config.skip_recheck,
        "integrationId": config.integration_id,
        "lastRun": config.last_run,
        "nextRun": config.next_run,
    }


def searchee_to_dict(searchee: Searchee) -> Dict[str, Any]:
    return {
        "id": searchee.id,
        "torrentHash": searchee.torrent_hash,
        "name": searchee.name,
        "totalSize": searchee.total_size,
        "fileCount": searchee.file_count,
        "fileSizes": searchee.file_sizes,
        "firstSearched": searchee.first_searched,
        "lastSearched": searchee.last_searched,
        "decisionCount": searchee.decision_count,
    }


def decision_to_dict(decision: Decision) -> Dict[str, Any]:
    return {
        "id": decision.id,
        "guid": decision.guid,
        "infoHash": decision.info_hash,
        "candidateName": decision.candidate_name,
        "candidateSize": decision.candidate_size,
        "decision": decision.decision.value,
        "firstSeen": decision.first_seen,
        "lastSeen": decision.last_seen,
    }


def instance_to_dict(instance: InstanceRecord) -> Dict[str, Any]:
    # Credentials are never returned
    return {"id": instance.id, "label": instance.label, "url": instance.url}


# =============================================================================
# Dependencies
# =============================================================================


def get_user_id(
    request: Request,
    x_user_id: Optional[int] = Header(None),
    x_api_key: Optional[str] = Header(None),
) -> int:
    """Resolve the calling user, enforcing the shared API key when configured."""
    settings: Settings = request.app.state.settings
    if settings.api_key and x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


async def owned_instance(
    instance_id: int, request: Request, user_id: int = Depends(get_user_id)
) -> InstanceRecord:
    """Load an instance, answering 404 unless the caller owns it."""
    persistence: PersistenceManager = request.app.state.persistence
    instance = await persistence.get_instance(instance_id, user_id)
    if instance is None:
        raise HTTPException(status_code=404, detail="Instance not found")
    return instance


# =============================================================================
# Application Factory
# =============================================================================


def create_app(
    settings: Optional[Settings] = None,
    client_factory: Optional[Callable] = None,
    indexer_factory: Optional[Callable] = None,
) -> FastAPI:
    """
    Build the application.

    The factories replace the real qBittorrent and Prowlarr clients; both
    default to the concrete implementations.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        setup_logging(
            log_level=settings.log_level,
            log_file=settings.log_file,
            log_format=settings.log_format,
            max_file_size_mb=settings.log_max_size_mb,
            backup_count=settings.log_backup_count,
        )

        logger.info("Starting cross-seed service...")
        os.makedirs(settings.data_path, exist_ok=True)

        persistence = PersistenceManager(settings.database_path)
        await persistence.initialize()
        cache = TorrentCache(settings.data_path)

        if client_factory or indexer_factory:
            orchestrator = CrossSeedOrchestrator(
                persistence, cache, client_factory, indexer_factory
            )
        else:
            orchestrator = CrossSeedOrchestrator.with_settings(
                persistence, cache, settings.request_timeout, settings.retry_config()
            )
        scheduler = CrossSeedScheduler(persistence, orchestrator)

        for instance in await persistence.list_instances():
            await cache.expire(instance.id, settings.cache_max_age_days)

        if settings.scheduler_enabled:
            await scheduler.start()

        app.state.persistence = persistence
        app.state.cache = cache
        app.state.orchestrator = orchestrator
        app.state.scheduler = scheduler

        yield

        await scheduler.stop()
        await persistence.close()
        logger.info("Cross-seed service stopped")

    app = FastAPI(
        title="Cross-Seeder",
        description="Finds and injects cross-seedable releases of completed torrents",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse({"detail": str(exc)}, status_code=400)

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # -------------------------------------------------------------------------
    # Instances & Integrations
    # -------------------------------------------------------------------------

    @app.post("/api/instances")
    async def create_instance(
        body: InstanceCreate, request: Request, user_id: int = Depends(get_user_id)
    ):
        """Register a qBittorrent instance."""
        instance_id = await request.app.state.persistence.save_instance(InstanceRecord(
            id=None,
            user_id=user_id,
            label=body.label,
            url=body.url,
            username=body.username,
            password=body.password,
        ))
        return {"id": instance_id}

    @app.get("/api/instances")
    async def list_instances(request: Request, user_id: int = Depends(get_user_id)):
        """List the caller's instances."""
        instances = await request.app.state.persistence.list_instances(user_id)
        return {"instances": [instance_to_dict(i) for i in instances]}

    @app.post("/api/integrations")
    async def create_integration(
        body: IntegrationCreate, request: Request, user_id: int = Depends(get_user_id)
    ):
        """Register a Prowlarr integration."""
        integration_id = await request.app.state.persistence.save_integration(IntegrationRecord(
            id=None,
            user_id=user_id,
            label=body.label,
            url=body.url,
            api_key=body.api_key,
        ))
        return {"id": integration_id}

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    @app.get("/api/cross-seed/config/{instance_id}")
    async def get_config(
        request: Request, instance: InstanceRecord = Depends(owned_instance)
    ):
        """Get the cross-seed configuration, or the defaults when none is saved."""
        persistence: PersistenceManager = request.app.state.persistence
        config = await persistence.get_scan_config(instance.id)
        return config_to_dict(config or ScanConfig(instance_id=instance.id))

    @app.put("/api/cross-seed/config/{instance_id}")
    async def update_config(
        body: ConfigUpdate,
        request: Request,
        instance: InstanceRecord = Depends(owned_instance),
        user_id: int = Depends(get_user_id),
    ):
        """Partially update the configuration and re-arm the schedule."""
        persistence: PersistenceManager = request.app.state.persistence
        config = await persistence.get_scan_config(instance.id) or ScanConfig(
            instance_id=instance.id
        )

        # integrationId may be explicitly cleared; other fields ignore null
        changes = {
            key: value
            for key, value in body.model_dump(exclude_unset=True).items()
            if value is not None or key == "integration_id"
        }
        if changes.get("integration_id") is not None:
            integration = await persistence.get_integration(changes["integration_id"], user_id)
            if integration is None:
                raise HTTPException(status_code=404, detail="Integration not found")

        for key, value in changes.items():
            setattr(config, key, value)

        await persistence.save_scan_config(config)
        await request.app.state.scheduler.set_schedule(instance.id, config.enabled)

        saved = await persistence.get_scan_config(instance.id)
        return config_to_dict(saved)

    # -------------------------------------------------------------------------
    # Scans & Status
    # -------------------------------------------------------------------------

    @app.post("/api/cross-seed/scan/{instance_id}")
    async def trigger_scan(
        request: Request,
        body: Optional[ScanRequest] = None,
        instance: InstanceRecord = Depends(owned_instance),
        user_id: int = Depends(get_user_id),
    ):
        """Run a scan now and return its result."""
        body = body or ScanRequest()
        scheduler: CrossSeedScheduler = request.app.state.scheduler
        try:
            result = await scheduler.trigger_manual_scan(
                instance.id, user_id, force=body.force, dry_run_override=body.dry_run
            )
        except ScanInProgressError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return result.to_dict()

    @app.get("/api/cross-seed/status")
    async def get_all_status(request: Request, user_id: int = Depends(get_user_id)):
        """Scheduling status of every configured instance of the caller."""
        return {"instances": await request.app.state.scheduler.status_all(user_id)}

    @app.get("/api/cross-seed/status/{instance_id}")
    async def get_status(
        request: Request, instance: InstanceRecord = Depends(owned_instance)
    ):
        """Scheduling status of one instance."""
        status = await request.app.state.scheduler.status(instance.id)
        if status is None:
            raise HTTPException(status_code=404, detail="Cross-seed not configured for this instance")
        return status

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    @app.post("/api/cross-seed/cache/{instance_id}/clear")
    async def clear_cache(
        request: Request, instance: InstanceRecord = Depends(owned_instance)
    ):
        """Delete cached and staged torrents of an instance."""
        cache: TorrentCache = request.app.state.cache
        return {
            "cacheCleared": await cache.clear(instance.id),
            "outputCleared": await cache.clear_output(instance.id),
        }

    @app.get("/api/cross-seed/cache/{instance_id}/stats")
    async def cache_stats(
        request: Request, instance: InstanceRecord = Depends(owned_instance)
    ):
        """Sizes of the cache and output folders of an instance."""
        cache: TorrentCache = request.app.state.cache
        stats = await cache.stats(instance.id)
        output = await cache.output_stats(instance.id)
        return {
            "cache": {"count": stats.count, "totalSizeBytes": stats.total_size_bytes},
            "output": {"count": output.count, "files": output.files},
        }

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    @app.get("/api/cross-seed/history/{instance_id}")
    async def get_history(
        request: Request,
        limit: int = 50,
        offset: int = 0,
        instance: InstanceRecord = Depends(owned_instance),
    ):
        """Searched torrents, most recent first."""
        persistence: PersistenceManager = request.app.state.persistence
        limit = max(1, min(limit, 500))
        offset = max(0, offset)
        searchees = await persistence.list_searchees(instance.id, limit, offset)
        return {
            "searchees": [searchee_to_dict(s) for s in searchees],
            "total": await persistence.count_searchees(instance.id),
        }

    @app.get("/api/cross-seed/history/{instance_id}/{searchee_id}/decisions")
    async def get_decisions(
        searchee_id: int,
        request: Request,
        instance: InstanceRecord = Depends(owned_instance),
    ):
        """Every candidate considered for one searched torrent."""
        persistence: PersistenceManager = request.app.state.persistence
        searchee = await persistence.get_searchee_by_id(searchee_id, instance.id)
        if searchee is None:
            raise HTTPException(status_code=404, detail="Searchee not found")
        decisions = await persistence.list_decisions(searchee.id)
        return {
            "searchee": searchee_to_dict(searchee),
            "decisions": [decision_to_dict(d) for d in decisions],
        }

    @app.delete("/api/cross-seed/history/{instance_id}")
    async def clear_history(
        request: Request, instance: InstanceRecord = Depends(owned_instance)
    ):
        """Forget every searched torrent of an instance."""
        deleted = await request.app.state.persistence.clear_history(instance.id)
        return {"deleted": deleted}

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        try:
            stats = await request.app.state.persistence.get_stats()
        except Exception as e:
            return JSONResponse({
                "status": "unhealthy",
                "message": str(e),
            }, status_code=500)

        return {
            "status": "healthy",
            "database": stats,
        }


def main():
    """Run the server."""
    import uvicorn

    settings = Settings()
    uvicorn.run(
        "cross_seeder.server:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
