# read_aggregator/main.py
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request

from read_aggregator.config import Settings, setup_logging
from read_aggregator.errors import ArticleNotFound, RateLimitExceeded
from read_aggregator.runtime import Runtime
from read_aggregator.schemas import PerformanceMetrics


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def client_ip(request: Request) -> str:
    # Behind the reverse proxy the peer is the proxy itself
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the API. An injected runtime is used as-is and left open."""

    # --- LIFECYCLE (STARTUP) ---
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if runtime is not None:
            app.state.runtime = runtime
            yield
            return

        settings = Settings.from_env()
        setup_logging(settings.log_level)
        owned = await Runtime.build(settings)
        app.state.runtime = owned
        # Run the consumers in the background of the API process
        if settings.run_workers:
            await owned.start()
        try:
            yield
        finally:
            await owned.close()

    app = FastAPI(title="read-aggregator", lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime

    # --- API ENDPOINTS ---

    @app.get("/articles/{article_id}")
    async def read_article(
        article_id: str,
        request: Request,
        x_reader_id: Optional[str] = Header(default=None),
    ):
        """
        Serve an article and track the read.
        Tracking is queued; the response never waits for persistence.
        """
        service = get_runtime(request).service
        try:
            article, result = await service.read_article(article_id, x_reader_id, client_ip(request))
        except RateLimitExceeded:
            raise HTTPException(status_code=429, detail="Too many reads in short time")
        except ArticleNotFound:
            raise HTTPException(status_code=404, detail="Article not found")

        return {
            "article": article.model_dump(mode="json"),
            "read_tracked": result.tracked,
            "reason": result.reason,
        }

    @app.get("/articles/{article_id}/performance", response_model=PerformanceMetrics)
    async def article_performance(article_id: str, request: Request):
        try:
            return await get_runtime(request).service.get_dashboard_metrics(article_id)
        except ArticleNotFound:
            raise HTTPException(status_code=404, detail="Article not found")

    @app.get("/articles/{article_id}/views")
    async def article_views(article_id: str, request: Request):
        try:
            views = await get_runtime(request).service.get_article_views(article_id)
        except ArticleNotFound:
            raise HTTPException(status_code=404, detail="Article not found")
        return {"article_id": article_id, "total_views": views}

    @app.get("/queue/stats")
    async def queue_stats(request: Request):
        return await get_runtime(request).queue.stats()

    return app


app = create_app()
