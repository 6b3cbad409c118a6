"""
Analysis Routes: Metered Sentiment Analysis

- POST /api/analyze: one text
- POST /api/batch: up to the batch limit of texts, processed concurrently

Errors raised by the orchestrator are mapped to HTTP statuses by the
handlers in `api.exceptions`.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from api.dependencies import get_orchestrator, rate_limit
from api.schemas import AnalyzeRequest, BatchAnalyzeRequest
from infrastructure.monitoring import get_logger
from orchestration.analysis_orchestrator import AnalysisOrchestrator

router = APIRouter(prefix="/api", tags=["Analysis"])
logger = get_logger(__name__)


@router.post(
    "/analyze",
    summary="Analyze sentiment, profanity, intents and language of a text",
    dependencies=[Depends(rate_limit)],
)
async def analyze_text(
    request: AnalyzeRequest,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Analyze one text and bill the host.

    Responses:
    - 200: analysis result with `cached` and `balanceRemaining`
    - 400: text or host missing
    - 402: balance cannot cover the estimated cost
    - 500: upstream classification failed
    """
    result = await orchestrator.analyze(request.text, request.host, request.model)

    logger.info(
        "analysis_completed",
        host=request.host,
        model=result.request_details.model,
        cached=result.cached,
        total_cost=result.cost.total_cost,
    )
    return result.to_payload()


@router.post(
    "/batch",
    summary="Analyze a batch of texts",
    dependencies=[Depends(rate_limit)],
)
async def analyze_batch(
    request: BatchAnalyzeRequest,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Analyze every text concurrently.

    Items that fail (402, 500) are reported inside `results` as
    `{error, details, ...}` entries; the request itself still returns 200.
    """
    batch = await orchestrator.analyze_batch(request.texts, request.host, request.model)

    logger.info(
        "batch_completed",
        host=request.host,
        total=batch.summary.total_texts,
        successful=batch.summary.successful,
        failed=batch.summary.failed,
    )
    return batch.to_payload()
