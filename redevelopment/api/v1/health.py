from fastapi import APIRouter, Request

from redevelopment.core.config import get_settings

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    rid = getattr(request.state, "request_id", None)
    return {
        "status": "ok",
        "service": get_settings().app_name,
        "request_id": rid,
    }
