"""Analysis trigger endpoint.

- POST /analyze: run one queued request through the orchestrator

The trigger is an alternate entry into the same orchestrator the poller uses;
the orchestrator's atomic claim makes a concurrent poll of the same request a
no-op.
"""

from fastapi import APIRouter, Request

from botcheck.api.models import AnalyzeRequestBody, ResponseEnvelope
from botcheck.api.responses import (
    INTERNAL_ERROR,
    NOT_FOUND,
    SERVICE_UNAVAILABLE,
    raise_api_error,
    wrap_response,
)
from botcheck.backend.utils.logging_config import get_logger
from botcheck.orchestrator import ProcessOutcome

router = APIRouter(tags=["analysis"])
logger = get_logger(__name__)


@router.post("/analyze", response_model=ResponseEnvelope)
async def analyze(body: AnalyzeRequestBody, request: Request):
    """Process the given request now.

    Returns:
        Response envelope with ``requestId`` and ``outcome`` (done, skipped or
        error). Failures inside the cascade are recorded on the request row
        and reported here only as ``outcome: error``.

    Errors:
        404 NOT_FOUND if the request does not exist
        503 SERVICE_UNAVAILABLE if the orchestrator is not initialized
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise_api_error(SERVICE_UNAVAILABLE, "Analysis worker is not initialized")

    logger.info("analyze_trigger_received", request_id=body.request_id)

    try:
        outcome = await orchestrator.process_request(body.request_id)
    except Exception as e:
        logger.error(
            "analyze_trigger_failed",
            request_id=body.request_id,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        raise_api_error(INTERNAL_ERROR, "Failed to process analysis request")

    if outcome is ProcessOutcome.NOT_FOUND:
        raise_api_error(NOT_FOUND, f"Analysis request {body.request_id} not found")

    return wrap_response({"requestId": body.request_id, "outcome": outcome.value})
