from typing import Any, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request, status

from cohort_scheduler.config.settings import settings
from cohort_scheduler.schemas.delivery_webhook_schemas import DeliveryWebhookResult
from cohort_scheduler.services.delivery_webhook_service import (
    DeliveryWebhookService,
    get_delivery_webhook_service,
    verify_webhook_token,
)
from cohort_scheduler.utils.responses import ResponseBuilder

delivery_router = APIRouter()


@delivery_router.post("")
async def process_delivery_events(
    request: Request,
    events: List[dict[str, Any]] = Body(...),
    x_webhook_token: Optional[str] = Header(default=None),
    webhook_service: DeliveryWebhookService = Depends(get_delivery_webhook_service),
):
    """Process a batch of delivery provider events"""
    if not verify_webhook_token(x_webhook_token, settings.DELIVERY_WEBHOOK_SECRET):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing webhook token",
        )

    counts = webhook_service.handle_events(events)
    result = DeliveryWebhookResult(received=len(events), counts=counts)

    return ResponseBuilder.success(
        request=request,
        status_code=status.HTTP_200_OK,
        data=result.model_dump(by_alias=True),
        message="Events processed successfully.",
    )
