"""
In-app purchase routes.

The mobile app submits the App Store receipt after a purchase or restore.
Failures answer with {"success": false, "error": ...} and the matching
status code; nothing is written on failure.
"""

import logging
from typing import Any, Callable, Coroutine, Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from learnpass.api.dependencies.providers import get_apple_client, get_catalog
from learnpass.billing.apple_adapter import AppleReceiptService
from learnpass.billing.plan_catalog import PlanCatalog
from learnpass.database.session import get_db_session
from learnpass.integrations.apple.receipt_client import AppleReceiptClient
from learnpass.platform.auth import CurrentUser, get_current_user
from learnpass.platform.errors import AppError, AuthorizationError, validation_error_from_request

logger = logging.getLogger(__name__)



def _failure_response(error: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content={"success": False, "error": error.message, "code": error.code, "details": error.details},
    )


class ReceiptRoute(APIRoute):
    """Answers request body validation failures in the receipt response shape."""

    def get_route_handler(self) -> Callable[[Request], Coroutine[Any, Any, Response]]:
        handler = super().get_route_handler()

        async def receipt_route_handler(request: Request) -> Response:
            try:
                return await handler(request)
            except RequestValidationError as e:
                error = validation_error_from_request(e)
                logger.warning("Receipt request rejected", extra={
                    "path": request.url.path,
                    "error_code": error.code,
                })
                return _failure_response(error)

        return receipt_route_handler


router = APIRouter(prefix="/api/iap", tags=["iap"], route_class=ReceiptRoute)


class AppleVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    receipt: str = Field(..., min_length=1, description="Base64 App Store receipt")
    product_id: Optional[str] = Field(None, alias="productId")
    transaction_id: Optional[str] = Field(None, alias="transactionId")
    user_id: Optional[str] = Field(None, alias="userId")


@router.post("/apple/verify")
async def verify_apple_receipt(
    body: AppleVerifyRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db_session),
    catalog: PlanCatalog = Depends(get_catalog),
    client: AppleReceiptClient = Depends(get_apple_client),
):
    """Verify a receipt and apply it to the caller's entitlement."""
    target_user = body.user_id or user.user_id
    try:
        if target_user != user.user_id and not user.is_admin:
            raise AuthorizationError("Cannot apply a receipt to another user")
        service = AppleReceiptService(db, catalog, client)
        return await service.verify_and_apply(
            target_user,
            body.receipt,
            product_id=body.product_id,
            transaction_id=body.transaction_id,
        )
    except AppError as e:
        logger.warning("Receipt verification failed", extra={
            "user_id": target_user,
            "error_code": e.code,
        })
        return _failure_response(e)
