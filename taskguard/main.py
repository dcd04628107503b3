"""Task Guard: FastAPI backend.

This is the central API that:
- Receives committed navigations from the browser extension
- Decides block/allow against the user's current task via Claude
- Honors allowlist, temporary bypass and one-time bypass overrides
- Queues block prompts and badge state for the extension to render
- Persists settings, bypasses, stats and history in SQLite
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskguard.bypass import BypassManager
from taskguard.cache import DecisionCache
from taskguard.config import Config, load_config
from taskguard.gatekeeper import Gatekeeper
from taskguard.models import (
    AddTaskRequest,
    AllowlistRequest,
    AnalyzeRequest,
    ApiKeyRequest,
    ApiKeyValidation,
    BadgeState,
    BlockPrompt,
    Decision,
    FeedbackRequest,
    NavigationEvent,
    NavigationOutcome,
    OneTimeBypassRequest,
    SetCurrentTaskRequest,
    StatsSnapshot,
    TaskValidationResult,
    TemporaryBypassRequest,
    ToggleRequest,
    ValidateTaskRequest,
)
from taskguard.normalizer import DecisionNormalizer
from taskguard.notifier import BadgeController, InMemoryBadge, NotificationController, PromptQueue, badge_for
from taskguard.oracle import ClassificationOracle
from taskguard.recent import RecentUrlWindow
from taskguard.settings import SettingsError, SettingsManager, mask_secret
from taskguard.stats import BlockHistory, StatsAggregator
from taskguard.storage import KeyValueStore, StorageError
from taskguard.task_validator import TaskValidator, improvement_suggestions

logger = logging.getLogger(__name__)


# ── Component wiring ─────────────────────────────────────────────────────────

@dataclass
class Services:
    config: Config
    store: KeyValueStore
    settings: SettingsManager
    bypass: BypassManager
    cache: DecisionCache
    oracle: ClassificationOracle
    stats: StatsAggregator
    history: BlockHistory
    prompts: PromptQueue
    badge: BadgeController
    surface: InMemoryBadge
    gatekeeper: Gatekeeper
    task_validator: TaskValidator


def build_services(
    config: Config,
    oracle: Optional[ClassificationOracle] = None,
    clock: Callable[[], float] = time.time,
) -> Services:
    store = KeyValueStore(config.database.path, limits=config.storage)
    settings = SettingsManager(store, fallback_api_key=config.anthropic.api_key, clock=clock)
    oracle = oracle or ClassificationOracle(config.anthropic)
    cache = DecisionCache(
        max_age_seconds=config.cache.max_age_seconds,
        max_size=config.cache.max_size,
        eviction_batch=config.cache.eviction_batch,
        cleanup_interval_seconds=config.cache.cleanup_interval_seconds,
        clock=clock,
    )
    stats = StatsAggregator(store, config.stats.average_minutes_per_distraction)
    history = BlockHistory(store, config.stats.max_blocked_history, clock=clock)
    prompts = PromptQueue()
    surface = InMemoryBadge()
    badge = BadgeController(surface, config.timing.badge_flash_seconds)
    notifier = NotificationController(
        prompts, badge, history, stats,
        debounce_seconds=config.timing.notification_debounce_seconds,
        clock=clock,
    )
    bypass = BypassManager(store, config.timing.temporary_bypass_minutes, clock=clock)
    gatekeeper = Gatekeeper(
        settings=settings,
        bypass=bypass,
        recent=RecentUrlWindow(config.timing.recent_url_window),
        cache=cache,
        oracle=oracle,
        normalizer=DecisionNormalizer(
            config.normalizer.unrelated_signals, config.normalizer.confidence_threshold
        ),
        notifier=notifier,
        stats=stats,
        cache_context_size=config.timing.cache_context_size,
    )
    return Services(
        config=config,
        store=store,
        settings=settings,
        bypass=bypass,
        cache=cache,
        oracle=oracle,
        stats=stats,
        history=history,
        prompts=prompts,
        badge=badge,
        surface=surface,
        gatekeeper=gatekeeper,
        task_validator=TaskValidator(oracle),
    )


def services(request: Request) -> Services:
    return request.app.state.services


router = APIRouter()


# ── Navigation and analysis ──────────────────────────────────────────────────

@router.post("/navigation", response_model=NavigationOutcome)
async def navigation(event: NavigationEvent, request: Request):
    """Main endpoint: run the gatekeeper for a committed navigation."""
    logger.info("Navigation: tab %d -> %s", event.tab_id, event.url)
    return await services(request).gatekeeper.handle_navigation(event)


@router.post("/analyze", response_model=Decision)
async def analyze(body: AnalyzeRequest, request: Request):
    return await services(request).gatekeeper.analyze(body.url)


@router.get("/tabs/{tab_id}/prompt", response_model=Optional[BlockPrompt])
async def pop_prompt(tab_id: int, request: Request):
    """Return (and clear) the pending block prompt for a tab, if any."""
    return services(request).prompts.pop(tab_id)


@router.get("/badge", response_model=BadgeState)
async def get_badge(request: Request):
    return services(request).surface.get()


# ── Overrides ────────────────────────────────────────────────────────────────

@router.post("/bypass/temporary")
async def temporary_bypass(body: TemporaryBypassRequest, request: Request):
    bypass = await services(request).bypass.grant_temporary(body.url, body.duration_minutes)
    minutes = body.duration_minutes or services(request).config.timing.temporary_bypass_minutes
    return {
        "status": "bypassed",
        "until": bypass.until,
        "message": f"Site temporarily unblocked for {minutes} minutes",
    }


@router.post("/bypass/one-time")
async def one_time_bypass(body: OneTimeBypassRequest, request: Request):
    await services(request).bypass.grant_one_time(body.url)
    return {"status": "bypassed", "message": "One-time bypass set"}


@router.get("/allowlist")
async def get_allowlist(request: Request):
    return {"allowlist": (await services(request).settings.load()).allowlist}


@router.post("/allowlist")
async def add_to_allowlist(body: AllowlistRequest, request: Request):
    allowlist = await services(request).settings.add_to_allowlist(host=body.host, url=body.url)
    return {"allowlist": allowlist}


@router.delete("/allowlist/{host}")
async def remove_from_allowlist(host: str, request: Request):
    return {"allowlist": await services(request).settings.remove_from_allowlist(host)}


# ── Tasks ────────────────────────────────────────────────────────────────────

@router.get("/tasks")
async def get_tasks(request: Request):
    settings = await services(request).settings.load()
    return {"tasks": settings.tasks, "current_task": settings.current_task}


@router.post("/tasks")
async def add_task(body: AddTaskRequest, request: Request):
    return {"tasks": await services(request).settings.add_task(body.text)}


@router.post("/tasks/current")
async def set_current_task(body: SetCurrentTaskRequest, request: Request):
    return {"current_task": await services(request).settings.set_current_task(body.index, body.text)}


@router.delete("/tasks/current")
async def clear_current_task(request: Request):
    await services(request).settings.clear_current_task()
    return {"status": "cleared"}


@router.delete("/tasks/{index}")
async def delete_task(index: int, request: Request):
    return {"tasks": await services(request).settings.delete_task(index)}


@router.post("/tasks/validate", response_model=TaskValidationResult)
async def validate_task(body: ValidateTaskRequest, request: Request):
    svc = services(request)
    settings = await svc.settings.load()
    result = await svc.task_validator.validate(
        body.task_text, settings.api_key, enabled=settings.task_validation_enabled
    )
    if not result.is_valid and not result.suggestions:
        result = result.model_copy(update={"suggestions": improvement_suggestions(body.task_text)})
    return result


@router.get("/tasks/examples")
async def task_examples():
    return TaskValidator.examples()


# ── Settings ─────────────────────────────────────────────────────────────────

@router.post("/toggle")
async def toggle(body: ToggleRequest, request: Request):
    svc = services(request)
    await svc.settings.set_enabled(body.enabled)
    svc.badge.show_enabled(body.enabled)
    return {"enabled": body.enabled}


@router.post("/api-key", response_model=ApiKeyValidation)
async def set_api_key(body: ApiKeyRequest, request: Request):
    """Validate the key against the API and store it only if it works."""
    svc = services(request)
    validation = await svc.oracle.validate_api_key(body.api_key)
    if validation.valid:
        await svc.settings.set_api_key(body.api_key)
    return validation


@router.get("/settings")
async def get_settings(request: Request):
    settings = await services(request).settings.load()
    data = settings.model_dump()
    data["api_key"] = mask_secret(settings.api_key) if settings.api_key else ""
    return data


# ── Stats, history, feedback ─────────────────────────────────────────────────

@router.get("/stats", response_model=StatsSnapshot)
async def get_stats(request: Request):
    return services(request).stats.snapshot()


@router.post("/stats/reset", response_model=StatsSnapshot)
async def reset_stats(request: Request):
    svc = services(request)
    await svc.stats.reset()
    return svc.stats.snapshot()


@router.get("/history")
async def get_history(request: Request):
    return {"blocked_sites": services(request).history.records()}


@router.post("/feedback")
async def feedback(body: FeedbackRequest, request: Request):
    entry = await services(request).settings.record_feedback(body.url, body.reason, body.correct)
    return {"status": "recorded", "feedback": entry}


# ── Debugging ────────────────────────────────────────────────────────────────

@router.get("/cache")
async def cache_info(request: Request, limit: int = 10, search: Optional[str] = None):
    cache = services(request).cache
    result = {"stats": cache.stats(), "entries": cache.entries(limit)}
    if search:
        result["matches"] = cache.search(search)
    return result


@router.delete("/cache")
async def clear_cache(request: Request):
    services(request).cache.clear()
    return {"status": "cleared"}


@router.get("/storage")
async def storage_info(request: Request):
    return await services(request).store.storage_info()


@router.get("/health")
async def health():
    return {"status": "ok"}


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(config: Optional[Config] = None, svc: Optional[Services] = None) -> FastAPI:
    config = config or (svc.config if svc else load_config())
    svc = svc or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: connect the store, restore stats/history, start the cache sweep."""
        await svc.store.connect()
        await svc.store.emergency_cleanup()
        await svc.stats.load()
        await svc.history.load()
        settings = await svc.settings.load()
        svc.surface.set(badge_for(settings.enabled))
        svc.cache.start_cleanup_timer()
        logger.info(
            "Task Guard started on port %d, gatekeeper %s",
            config.api.port, "enabled" if settings.enabled else "disabled",
        )
        yield
        svc.cache.stop_cleanup_timer()
        svc.badge.cancel()
        await svc.store.close()
        logger.info("Task Guard shut down")

    app = FastAPI(
        title="Task Guard",
        description="Task-aware navigation gatekeeper",
        lifespan=lifespan,
    )
    app.state.services = svc

    # CORS: allow the extension from any origin (it runs as chrome-extension://)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SettingsError)
    async def settings_error_handler(request: Request, exc: SettingsError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error("Storage error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})

    app.include_router(router)
    return app


# ── Run with uvicorn ─────────────────────────────────────────────────────────

def run():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    import uvicorn

    config = load_config()
    uvicorn.run(
        create_app(config),
        host=config.api.host,
        port=config.api.port,
        log_level="info",
    )


if __name__ == "__main__":
    run()
