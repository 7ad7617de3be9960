"""ABOUTME: FastAPI entrypoint for the Legal Council service.
ABOUTME: Exposes health and council deliberation endpoints."""

import logging
from typing import AsyncIterator

from fastapi import Depends, FastAPI, HTTPException

from legal_council.config import ConfigurationError, InappropriateQueryError, settings
from legal_council.council import LegalCouncil, QuorumError
from legal_council.models import CouncilDeliberation, CouncilQuery

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Legal Council", version="0.1.0")


async def get_council_service() -> AsyncIterator[LegalCouncil]:
    try:
        council = LegalCouncil()
    except ConfigurationError as exc:
        logger.error("Council is misconfigured: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    try:
        yield council
    finally:
        await council.client.aclose()


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/council/deliberate", response_model=CouncilDeliberation)
async def deliberate(
    payload: CouncilQuery,
    service: LegalCouncil = Depends(get_council_service),
) -> CouncilDeliberation:
    try:
        return await service.deliberate(payload)
    except InappropriateQueryError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except QuorumError as exc:
        raise HTTPException(
            status_code=503,
            detail={
                "message": str(exc),
                "stage": exc.stage,
                "actualCount": exc.actual_count,
                "requiredCount": exc.required_count,
                "errors": [error.model_dump(by_alias=True) for error in exc.errors],
            },
        ) from exc
    except ConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
