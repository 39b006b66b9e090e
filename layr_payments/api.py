"""
HTTP surface for the Layr Payments package.

Mount :data:`router` on an existing FastAPI app (with a ``PaymentManager`` on
``app.state.payment_manager``), or build a standalone app with :func:`create_app`.
"""

import asyncio
import contextlib
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .core import PaymentManager
from .exceptions import LayrPaymentsError
from .verification import VerificationOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["payments"])

# How often a running verification checks whether its client went away
DISCONNECT_POLL_INTERVAL = 0.5


class InitiatePaymentRequest(BaseModel):
    userId: str = Field(min_length=1)
    projectId: str = Field(min_length=1)
    accessType: str = Field(min_length=1)


class VerifyPaymentRequest(BaseModel):
    paymentId: str = Field(min_length=1)
    txHash: str = Field(min_length=1)
    userId: str = Field(min_length=1)


def error_body(exc: LayrPaymentsError) -> dict[str, Any]:
    """Client-facing JSON body for a domain error."""
    body: dict[str, Any] = {"success": False, "error": exc.user_message, "errorCode": exc.error_code}
    if exc.payment_code is not None:
        info = exc.payment_error()
        body["actionableSteps"] = list(info.actionable_steps)
        body["recoverable"] = info.recoverable
    else:
        body["actionableSteps"] = []
        body["recoverable"] = exc.http_status < 500
    return body


def get_manager(request: Request) -> PaymentManager:
    return request.app.state.payment_manager


async def _watch_disconnect(request: Request, cancel: asyncio.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected during verification")
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL)


@router.post("/payments/initiate")
async def initiate_payment(body: InitiatePaymentRequest, manager: PaymentManager = Depends(get_manager)):
    intent = await asyncio.to_thread(manager.initiate_payment, body.userId, body.projectId, body.accessType)
    return {
        "success": True,
        "data": {
            "paymentId": intent.id,
            "amount": intent.amount,
            "currency": intent.currency,
            "recipientAddress": intent.recipient,
            "expiresAt": intent.expires_at.isoformat(),
            "projectId": intent.project_id,
            "accessType": intent.tier.value,
        },
    }


@router.post("/payments/verify")
async def verify_payment(
    body: VerifyPaymentRequest, request: Request, manager: PaymentManager = Depends(get_manager)
):
    cancel = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    try:
        result = await manager.verify_payment(body.paymentId, body.txHash, body.userId, cancel=cancel)
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher

    if result.outcome is VerificationOutcome.PENDING:
        return JSONResponse(
            status_code=202,
            content={
                "success": False,
                "accessGranted": False,
                "status": "pending",
                "txHash": result.tx_hash,
                "message": "Transaction is still pending. Please try again in a few moments.",
            },
        )

    if result.outcome is VerificationOutcome.FAILED:
        info = result.payment_error()
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": info.user_message,
                "errorCode": info.code.value,
                "actionableSteps": list(info.actionable_steps),
                "recoverable": info.recoverable,
                "reason": result.reason.value,
                "txHash": result.tx_hash,
            },
        )

    return {
        "success": True,
        "data": {
            "accessGranted": True,
            "txHash": result.tx_hash,
            "purchase": result.grant.to_dict(),
        },
    }


@router.get("/payments/check-access/{project_id}")
async def check_access(
    project_id: str,
    user_address: Optional[str] = Query(default=None, alias="userAddress"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    manager: PaymentManager = Depends(get_manager),
):
    status = await manager.check_access(project_id, user_id=user_id, wallet=user_address)
    data = status.to_dict()
    return {
        "success": True,
        "data": {
            "hasAccess": data["hasAccess"],
            "accessType": data["accessType"],
            "grantedAt": data["grantedAt"],
            "hasDemo": data["hasDemo"],
            "hasDownload": data["hasDownload"],
            "onchainTier": data["onchainTier"],
        },
        "isOwner": status.is_owner,
        "fallback": status.fallback,
        "discrepancy": status.discrepancy,
    }


@router.get("/access/check")
async def check_access_by_user(
    project_id: str = Query(alias="projectId", min_length=1),
    user_id: str = Query(alias="userId", min_length=1),
    manager: PaymentManager = Depends(get_manager),
):
    status = await manager.check_access(project_id, user_id=user_id)
    return {
        "success": True,
        "data": {"hasDemo": status.has_demo, "hasDownload": status.has_download, "isOwner": status.is_owner},
    }


@router.get("/payments/purchases/{user_id}")
async def get_user_purchases(
    user_id: str,
    page: int = Query(default=1),
    limit: int = Query(default=20),
    manager: PaymentManager = Depends(get_manager),
):
    purchases = await asyncio.to_thread(manager.get_user_purchases, user_id, page, limit)
    return {"success": True, "data": purchases.to_dict()}


@router.get("/access/user/{wallet_address}")
async def get_wallet_access(wallet_address: str, manager: PaymentManager = Depends(get_manager)):
    grants = await asyncio.to_thread(manager.get_wallet_access, wallet_address)
    return {"success": True, "data": [grant.to_dict() for grant in grants]}


@router.get("/transactions/user/{wallet_address}")
async def get_wallet_transactions(
    wallet_address: str,
    page: int = Query(default=1),
    limit: int = Query(default=20),
    manager: PaymentManager = Depends(get_manager),
):
    history = await asyncio.to_thread(manager.get_wallet_transactions, wallet_address, page, limit)
    return {"success": True, **history.to_dict()}


@router.get("/transactions/project/{project_id}")
async def get_project_transactions(
    project_id: str,
    page: int = Query(default=1),
    limit: int = Query(default=20),
    manager: PaymentManager = Depends(get_manager),
):
    history = await asyncio.to_thread(manager.get_project_transactions, project_id, page, limit)
    return {"success": True, **history.to_dict()}


@router.get("/transactions/{user_id}")
async def get_transaction_history(
    user_id: str,
    direction: Optional[str] = Query(default=None, alias="type"),
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    page: int = Query(default=1),
    limit: int = Query(default=20),
    manager: PaymentManager = Depends(get_manager),
):
    history = await asyncio.to_thread(
        manager.get_transaction_history, user_id, direction, start_date, end_date, page, limit
    )
    return {"success": True, **history.to_dict()}


@router.get("/health")
async def health(manager: PaymentManager = Depends(get_manager)):
    status = await manager.get_health_status()
    return JSONResponse(status_code=200 if status["healthy"] else 503, content=status)


async def _handle_domain_error(request: Request, exc: LayrPaymentsError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=error_body(exc))


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in err.get("loc", ())[1:]) for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": f"Missing or invalid fields: {', '.join(f for f in fields if f) or 'request'}",
            "errorCode": "VALIDATION_ERROR",
            "actionableSteps": [],
            "recoverable": True,
        },
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LayrPaymentsError, _handle_domain_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)


def create_app(manager: PaymentManager, connect_on_startup: bool = True) -> FastAPI:
    """Build a FastAPI app serving the payment routes for ``manager``.

    With ``connect_on_startup`` the chain client is connected when the app starts
    and closed when it stops.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        if connect_on_startup:
            await manager.connect()
        try:
            yield
        finally:
            await manager.close()

    app = FastAPI(title="layr-payments", lifespan=lifespan)
    app.state.payment_manager = manager
    install_error_handlers(app)
    app.include_router(router)
    return app
