"""HTTP read API for the leaderboard UI."""

import asyncio
from contextlib import asynccontextmanager
from typing import Annotated, Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from . import __version__, schemas
from .pipeline import IngestionPipeline
from .query import DEFAULT_LIMIT, QueryAPI
from .util import log

Limit = Annotated[int, Query(ge=1, le=100, description="Number of rows to return")]


def get_query_api(request: Request) -> QueryAPI:
    return request.app.state.query_api


def create_app(query_api: QueryAPI, pipeline: Optional[IngestionPipeline] = None) -> FastAPI:
    """Build the API. With a pipeline, ingestion runs for the app's lifetime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if pipeline is not None:
            pipeline.replay_journal()
            task = asyncio.create_task(pipeline.run())
        log(f"Leaderboard API started (version {__version__})")
        yield
        if task is not None:
            pipeline.stop()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                log(f"Ingestion task ended with error: {exc}")
            pipeline.close()
        log("Leaderboard API stopped")

    app = FastAPI(title="GameStake Leaderboard", version=__version__, lifespan=lifespan)
    app.state.query_api = query_api
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["GET"], allow_headers=["*"])

    @app.get("/health", tags=["system"])
    def health(query: QueryAPI = Depends(get_query_api)) -> Dict[str, Any]:
        """Ingestion health; ``status`` is ``degraded`` while the source is failing or stale."""
        return query.status()

    @app.get("/leaderboard", response_model=schemas.LeaderboardResponse, tags=["leaderboard"])
    def leaderboard(limit: Limit = DEFAULT_LIMIT, query: QueryAPI = Depends(get_query_api)):
        """Top players by total GT won."""
        return query.leaderboard(limit)

    @app.get("/player/{address}", response_model=schemas.PlayerEntry, tags=["leaderboard"])
    def player(address: str, query: QueryAPI = Depends(get_query_api)):
        try:
            return query.player_stats(address)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/recent", response_model=schemas.RecentMatchesResponse, tags=["matches"])
    def recent(limit: Limit = DEFAULT_LIMIT, query: QueryAPI = Depends(get_query_api)):
        """Most recently updated matches, newest first."""
        return query.recent_matches(limit)

    @app.get("/matches/{match_id}", response_model=schemas.MatchEntry, tags=["matches"])
    def match(match_id: str, query: QueryAPI = Depends(get_query_api)):
        entry = query.match(match_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="Match not found")
        return entry

    return app
