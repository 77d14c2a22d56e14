from fastapi import APIRouter, Depends, Request

from ..core.dependencies import client_ip, get_rate_limiter
from ..models import BlockStatusResponse
from ..services import RequestRateLimiter


router = APIRouter(prefix="/ddos", tags=["abuse"])

@router.get("/check", response_model=BlockStatusResponse)
def check_block_status(
    request: Request,
    limiter: RequestRateLimiter = Depends(get_rate_limiter),
) -> BlockStatusResponse:
    limiter.check(client_ip(request))
    return BlockStatusResponse()
