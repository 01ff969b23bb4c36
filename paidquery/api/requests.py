import logging
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from .. import metrics
from ..errors import InternalError, PaidQueryError
from ..schemas import ReportRequest, RequestCreated, StatusResponse
from ..services import RequestService, StatusService

logger = logging.getLogger(__name__)

router = APIRouter()


def content_disposition(filename: str) -> str:
    """Attachment header that survives non-latin-1 domains (RFC 6266 / 5987)."""
    fallback = "".join(c if " " <= c <= "~" and c not in '"\\' else "_" for c in filename)
    if fallback == filename:
        return f'attachment; filename="{filename}"'
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


def get_request_service(request: Request) -> RequestService:
    return request.app.state.request_service


def get_status_service(request: Request) -> StatusService:
    return request.app.state.status_service


@router.post("/requests", response_model=RequestCreated, response_model_by_alias=True)
async def create_request(body: ReportRequest, service: RequestService = Depends(get_request_service)):
    try:
        secret = await service.create_job(body.domain, body.date, body.payor_address)
    except PaidQueryError:
        raise
    except Exception as exc:
        metrics.error_count.inc()
        logger.exception("requests: failed to create job")
        raise InternalError() from exc

    return RequestCreated(
        secret=secret,
        message=service.payment_instructions(secret),
        status_url=f"/requests/{secret}/status",
    )


@router.get("/requests/{secret}/status")
async def get_request_status(secret: str, service: StatusService = Depends(get_status_service)):
    view = await service.get_status(secret)

    if view.status == "completed":
        return Response(
            content=view.result,
            media_type="text/csv",
            headers={"Content-Disposition": content_disposition(view.filename)},
        )
    if view.status == "failed":
        return JSONResponse(status_code=400, content={"error": view.error or "Query failed"})
    return JSONResponse(
        status_code=202,
        content=StatusResponse(status=view.status, message=view.message or "").model_dump(),
    )


@router.delete("/requests/{secret}")
async def cancel_request(secret: str, request: Request, service: StatusService = Depends(get_status_service)):
    """Stop watching for a payment the client no longer intends to send."""
    await service.get_status(secret)
    cancelled = await request.app.state.supervisor.cancel(secret)
    view = await service.get_status(secret)
    logger.info("requests: cancel %s, watcher stopped=%s", secret[:8], cancelled)
    return {"status": view.status, "cancelled": cancelled}
