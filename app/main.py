"""Entry point for the FastAPI-powered MAL analytics service."""

from __future__ import annotations

import html
import logging
import math
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import Settings, settings
from .database import Database
from .errors import MALError, OAuthFlowError
from .services.analytics import AnalyticsService
from .services.credentials import CredentialStore
from .services.gateway import RequestGateway
from .services.mal import MALClient
from .services.oauth import PKCEAuthFlow, TokenEndpoint
from .services.refresh import TokenRefreshCoordinator
from .services.sync import AnimeListSynchronizer
from .storage import LegacyKeyValueStore, SqlCredentialBackend

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything the routes need, wired once per application lifespan."""

    store: CredentialStore
    auth_flow: PKCEAuthFlow
    refresher: TokenRefreshCoordinator
    gateway: RequestGateway
    synchronizer: AnimeListSynchronizer
    mal: MALClient
    analytics: AnalyticsService


def build_services(
    config: Settings,
    *,
    api_client: httpx.AsyncClient,
    token_client: httpx.AsyncClient,
    store: CredentialStore,
    legacy: LegacyKeyValueStore,
) -> ServiceContainer:
    token_endpoint = TokenEndpoint(config, token_client)
    refresher = TokenRefreshCoordinator(store, token_endpoint)
    gateway = RequestGateway(config, api_client, store, refresher)
    synchronizer = AnimeListSynchronizer(config, gateway)
    mal = MALClient(gateway, store)
    auth_flow = PKCEAuthFlow(
        config,
        store,
        token_endpoint,
        legacy,
        identity_loader=mal.fetch_current_user,
    )
    return ServiceContainer(
        store=store,
        auth_flow=auth_flow,
        refresher=refresher,
        gateway=gateway,
        synchronizer=synchronizer,
        mal=mal,
        analytics=AnalyticsService(config, synchronizer),
    )


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    api_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.mal_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    token_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0))
    )
    database = Database(settings.database_url)
    await database.create_all()

    legacy = LegacyKeyValueStore(settings.legacy_store_path)
    store = CredentialStore(
        SqlCredentialBackend(database.session_factory),
        legacy,
        default_client_id=settings.mal_client_id,
    )
    await store.load()

    fastapi_app.state.services = build_services(
        settings,
        api_client=api_client,
        token_client=token_client,
        store=store,
        legacy=legacy,
    )
    fastapi_app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await store.flush()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="MyAnimeList statistics, franchise maps and recommendations",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=[f"http://localhost:{settings.server_port}"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    register_exception_handlers(fastapi_app)
    register_routes(fastapi_app)
    return fastapi_app


def register_exception_handlers(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(MALError)
    async def _mal_error_handler(_: Request, exc: MALError) -> JSONResponse:
        headers: dict[str, str] = {}
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            headers["Retry-After"] = str(math.ceil(retry_after))
        logger.info("MAL request failed: %s (%s)", exc.code, exc)
        return JSONResponse(
            {"detail": exc.to_payload()}, status_code=exc.status_code, headers=headers
        )


def get_services(fastapi_app: FastAPI) -> ServiceContainer:
    services = getattr(fastapi_app.state, "services", None)
    if not isinstance(services, ServiceContainer):
        raise RuntimeError("MAL services not initialised")
    return services


class ClientIdPayload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    client_id: str = Field(min_length=1, max_length=200)


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/mal/status")
    async def mal_status(request: Request) -> dict[str, Any]:
        services = get_services(request.app)
        store = services.store
        return {
            "authenticated": store.is_authenticated(),
            "client_configured": bool(store.get_client_id()),
            "username": store.get_username(),
            "user_id": store.get_user_id(),
            "flow_state": services.auth_flow.status.value,
        }

    @fastapi_app.post("/api/mal/client-id")
    async def set_client_id(request: Request, payload: ClientIdPayload) -> dict[str, bool]:
        get_services(request.app).store.set_client_id(payload.client_id)
        return {"client_configured": True}

    @fastapi_app.post("/api/mal/login-url")
    async def mal_login_url(request: Request) -> dict[str, str]:
        return {"url": get_services(request.app).auth_flow.start()}

    @fastapi_app.get(
        settings.redirect_path,
        response_class=HTMLResponse,
        name="mal_oauth_callback",
    )
    async def mal_oauth_callback(
        request: Request,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> HTMLResponse:
        flow = get_services(request.app).auth_flow
        try:
            await flow.handle_callback(
                code, state, error=error, error_description=error_description
            )
        except OAuthFlowError as exc:
            return HTMLResponse(_render_callback_page(False, str(exc)), status_code=400)
        except MALError as exc:
            return HTMLResponse(
                _render_callback_page(False, str(exc)), status_code=exc.status_code
            )
        return HTMLResponse(_render_callback_page(True, None))

    @fastapi_app.post("/api/mal/logout")
    async def mal_logout(request: Request) -> dict[str, bool]:
        services = get_services(request.app)
        services.store.logout()
        services.auth_flow.reset()
        return {"authenticated": False}

    @fastapi_app.delete("/api/mal/credentials")
    async def mal_forget_credentials(request: Request) -> dict[str, bool]:
        services = get_services(request.app)
        services.store.clear()
        services.auth_flow.reset()
        return {
            "authenticated": False,
            "client_configured": bool(services.store.get_client_id()),
        }

    @fastapi_app.get("/api/mal/user")
    async def mal_user(request: Request) -> dict[str, Any]:
        return await get_services(request.app).mal.fetch_current_user()

    @fastapi_app.get("/api/mal/stats")
    async def mal_user_stats(request: Request) -> dict[str, Any]:
        stats = await get_services(request.app).mal.fetch_user_stats()
        return stats.model_dump()

    @fastapi_app.get("/api/mal/animelist")
    async def mal_anime_list(
        request: Request,
        status: str | None = None,
        limit: int | None = Query(default=None, ge=1),
        extended: bool = False,
    ) -> dict[str, Any]:
        try:
            batch = await get_services(request.app).synchronizer.fetch_anime_list(
                status, limit, extended=extended
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "data": [entry.model_dump() for entry in batch.entries],
            "pages": batch.pages,
            "complete": batch.fetched,
        }

    @fastapi_app.get("/api/mal/search")
    async def mal_search(request: Request, q: str = Query(min_length=1)) -> dict[str, Any]:
        return {"data": await get_services(request.app).mal.search_anime(q)}

    @fastapi_app.get("/api/mal/anime/{anime_id}")
    async def mal_anime(request: Request, anime_id: int) -> dict[str, Any]:
        return await get_services(request.app).mal.get_anime(anime_id)

    @fastapi_app.get("/api/stats/score-distribution")
    async def stats_score_distribution(request: Request) -> list[dict[str, Any]]:
        buckets = await get_services(request.app).analytics.score_distribution()
        return [bucket.model_dump() for bucket in buckets]

    @fastapi_app.get("/api/stats/studios")
    async def stats_studios(request: Request) -> list[dict[str, Any]]:
        rows = await get_services(request.app).analytics.studio_affinity()
        return [row.model_dump() for row in rows]

    @fastapi_app.get("/api/stats/studio-completion")
    async def stats_studio_completion(request: Request) -> list[dict[str, Any]]:
        rows = await get_services(request.app).analytics.studio_completion()
        return [row.model_dump() for row in rows]

    @fastapi_app.get("/api/stats/genres")
    async def stats_genres(request: Request) -> list[dict[str, Any]]:
        rows = await get_services(request.app).analytics.genre_breakdown()
        return [row.model_dump() for row in rows]

    @fastapi_app.get("/api/stats/seasons")
    async def stats_seasons(request: Request) -> list[dict[str, Any]]:
        breakdown = await get_services(request.app).analytics.seasonal_breakdown()
        return [row.model_dump() for row in breakdown.seasons]

    @fastapi_app.get("/api/stats/season-summary")
    async def stats_season_summary(request: Request) -> dict[str, Any]:
        breakdown = await get_services(request.app).analytics.seasonal_breakdown()
        return breakdown.model_dump(include={"by_season", "favorite_season"})

    @fastapi_app.get("/api/stats/franchises")
    async def stats_franchises(request: Request) -> list[dict[str, Any]]:
        clusters = await get_services(request.app).analytics.franchise_clusters()
        return [cluster.model_dump() for cluster in clusters]

    @fastapi_app.get("/api/stats/franchise-map")
    async def stats_franchise_map(request: Request) -> list[dict[str, Any]]:
        nodes = await get_services(request.app).analytics.franchise_nodes()
        return [node.model_dump() for node in nodes]

    @fastapi_app.get("/api/stats/recommendations")
    async def stats_recommendations(request: Request) -> list[dict[str, Any]]:
        candidates = await get_services(request.app).analytics.recommendations()
        return [candidate.model_dump() for candidate in candidates]

    @fastapi_app.get("/api/stats/overview")
    async def stats_overview(request: Request) -> dict[str, Any]:
        overview = await get_services(request.app).analytics.overview()
        return overview.model_dump()


def _render_callback_page(success: bool, message: str | None) -> str:
    if success:
        title = "Authorization Successful"
        heading = "&#10003; Authorization Successful!"
        colour = "#3ba55d"
        body = "You can close this window and return to the app."
    else:
        title = "Authorization Failed"
        heading = "Authorization Failed"
        colour = "#ed4245"
        body = f"Error: {html.escape(message or 'unknown error')}"
    return f"""
<!DOCTYPE html>
<html lang=\"en\">
<head>
    <meta charset=\"utf-8\" />
    <title>{title}</title>
</head>
<body style=\"background:#1a1b1e;color:#fff;font-family:system-ui;display:flex;justify-content:center;align-items:center;height:100vh;margin:0;\">
    <div style=\"text-align:center;\">
        <h1 style=\"color:{colour};\">{heading}</h1>
        <p>{body}</p>
        <p>You can close this window.</p>
    </div>
</body>
</html>
"""


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
