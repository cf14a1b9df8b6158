from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from mindscript.gateway.api.v1 import routers as v1_routers
from mindscript.gateway.config import ProgressChannels, Settings, get_settings
from mindscript.gateway.db import close_db, create_session_factory, prepare_database
from mindscript.gateway.exceptions import APIError
from mindscript.gateway.job_store import JobStore, RetryPolicy
from mindscript.gateway.jobs import RenderJobService
from mindscript.gateway.logging_config import (
    RequestContextMiddleware,
    api_error_handler,
    configure_logging,
    unhandled_exception_handler,
)
from mindscript.gateway.metrics import init_metrics_db, start_metrics_writer, stop_metrics_writer
from mindscript.gateway.progress import InMemoryProgressChannel, ProgressChannel, RedisProgressChannel
from mindscript.gateway.redis_client import create_redis_client


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.dependency_overrides[get_settings]()
    assert isinstance(settings, Settings)

    configure_logging(settings.log_dir)
    if settings.metrics_db_path is not None:
        init_metrics_db(settings.metrics_db_path)
        await start_metrics_writer()

    await prepare_database(settings)

    channel: ProgressChannel
    if settings.progress_channel == ProgressChannels.REDIS:
        app.state.redis_client = await create_redis_client(settings)
        channel = RedisProgressChannel(app.state.redis_client)
    else:
        channel = InMemoryProgressChannel()
    app.state.progress_channel = channel

    store = JobStore(
        create_session_factory(settings),
        channel,
        retry_policy=RetryPolicy.from_settings(settings),
        default_max_retries=settings.default_max_retries,
    )
    app.state.job_store = store
    app.state.job_service = RenderJobService(store, channel, settings.asset_base_urls)

    yield

    await channel.close()
    if settings.progress_channel == ProgressChannels.REDIS:
        await app.state.redis_client.aclose()
    await close_db()
    await stop_metrics_writer()


def create_app(
    settings: Settings | None = None,
) -> FastAPI:
    if settings is None:
        settings = Settings()  # type: ignore

    app = FastAPI(
        title="Mindscript Render Gateway",
        version="0.1.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    app.dependency_overrides[get_settings] = lambda: settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for r in v1_routers:
        app.include_router(r)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
