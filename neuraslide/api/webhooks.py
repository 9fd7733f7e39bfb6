from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from neuraslide.config import settings
from neuraslide.db import get_db
from neuraslide.models.webhook import WebhookProvider
from neuraslide.schemas.webhook import (
    InstagramWebhookData,
    ProcessedEventList,
    ProcessedEventRead,
)
from neuraslide.services import instagram_webhooks, stripe_webhooks
from neuraslide.services.common import coerce_uuid
from neuraslide.services.exceptions import InvalidPayload, InvalidSignature
from neuraslide.services.webhook_ledger import processed_events

router = APIRouter(prefix="/webhooks")


def _user_filter(user_id: str | None):
    try:
        return coerce_uuid(user_id) if user_id else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user_id") from exc


def _events_page(db: Session, provider: WebhookProvider, user_id, limit: int, offset: int):
    page = processed_events.list_response(
        db, provider, user_id=_user_filter(user_id), limit=limit, offset=offset
    )
    return ProcessedEventList(
        events=[ProcessedEventRead.model_validate(item) for item in page["events"]],
        total=page["total"],
        has_more=page["hasMore"],
    ).model_dump(mode="json", by_alias=True)


def _instagram_response(results, message: str) -> dict:
    data = InstagramWebhookData(
        events_processed=len(results), results=[item.public() for item in results]
    )
    return {
        "success": True,
        "message": message,
        "data": data.model_dump(by_alias=True),
    }


@router.get("/instagram", response_class=PlainTextResponse, tags=["instagram-webhooks"])
def verify_instagram_webhook(
    mode: str | None = Query(default=None, alias="hub.mode"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
    verify_token: str | None = Query(default=None, alias="hub.verify_token"),
):
    if not mode or not challenge or not verify_token:
        raise HTTPException(status_code=400, detail="Missing verification parameters")
    answer = instagram_webhooks.verify_subscription(mode, verify_token, challenge)
    if answer is None:
        raise HTTPException(status_code=403, detail="Verification failed")
    return PlainTextResponse(answer)


@router.post("/instagram", tags=["instagram-webhooks"])
async def receive_instagram_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    signature = request.headers.get("x-hub-signature-256")
    try:
        payload = instagram_webhooks.parse_delivery(body, signature)
    except InvalidSignature as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except InvalidPayload as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    results = instagram_webhooks.process_payload(db, payload)
    return _instagram_response(results, "Webhook processed successfully")


@router.get("/instagram/events", tags=["instagram-webhooks"])
def list_instagram_events(
    user_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return {
        "success": True,
        "message": "Webhook events retrieved successfully",
        "data": _events_page(db, WebhookProvider.instagram, user_id, limit, offset),
    }


@router.get("/instagram/health", tags=["instagram-webhooks"])
def instagram_webhook_health():
    return {
        "success": True,
        "message": "Instagram webhook endpoint is healthy",
        "data": {
            "signatureVerification": bool(settings.instagram_app_secret),
            "verifyTokenConfigured": bool(settings.instagram_webhook_verify_token),
        },
    }


@router.post("/instagram/test", tags=["instagram-webhooks"])
def run_instagram_test_webhook(
    account_id: str = Query(min_length=1),
    text: str = Query(default="This is a test message from webhook test endpoint"),
    db: Session = Depends(get_db),
):
    if settings.is_production:
        raise HTTPException(status_code=403, detail="Test webhook not available in production")
    payload = instagram_webhooks.build_test_payload(account_id, text=text)
    results = instagram_webhooks.process_payload(db, payload)
    response = _instagram_response(results, "Test webhook processed successfully")
    response["data"]["testEvent"] = payload
    return response


@router.post("/stripe", tags=["stripe-webhooks"])
async def receive_stripe_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        data = stripe_webhooks.process_delivery(db, body, signature)
    except InvalidSignature as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "success": True,
        "message": "Webhook processed successfully",
        "data": data.model_dump(by_alias=True),
    }


@router.get("/stripe/events", tags=["stripe-webhooks"])
def list_stripe_events(
    user_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return {
        "success": True,
        "message": "Stripe webhook events retrieved successfully",
        "data": _events_page(db, WebhookProvider.stripe, user_id, limit, offset),
    }


@router.get("/stripe/health", tags=["stripe-webhooks"])
def stripe_webhook_health():
    return {
        "success": True,
        "message": "Stripe webhook endpoint is healthy",
        "data": {"signatureVerification": bool(settings.stripe_webhook_secret)},
    }
