"""
Webhook endpoints - delivery reports from every messaging provider.

Order of operations per call:
1. Receipt (webhook_receipts) committed before anything else, so even
   rejected calls leave forensic evidence
2. Signature validation (per-provider) -> 401
3. Body parsing -> 400
4. Detection, categorization, normalization, state machine -> 200

Processing errors after parsing are logged, alerted and answered with 200
so providers do not retry-storm us.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from deliveryledger.config import get_settings
from deliveryledger.database import get_db
from deliveryledger.providers import categorize, detect_provider, normalize_all
from deliveryledger.providers.registry import UNKNOWN_PROVIDER
from deliveryledger.schemas.normalized_event import EVENT_TYPES
from deliveryledger.services.delivery_reports import handle_delivery_report
from deliveryledger.services.delivery_state import APPLIED
from deliveryledger.services.receipts import finalize_receipt, record_receipt
from deliveryledger.utils.alerting import AlertType, send_alert
from deliveryledger.utils.metrics import Timer
from deliveryledger.utils.webhook_signatures import (
    SignatureVerifier,
    WebhookSecurityConfig,
    get_webhook_url,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhook", tags=["webhooks"])

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
# Categories that carry no delivery status for the state machine
ACK_ONLY_CATEGORIES = ("inbound", "template_status", "system")


def get_signature_verifier() -> SignatureVerifier:
    """FastAPI dependency: verifier built from current settings."""
    return SignatureVerifier(WebhookSecurityConfig.from_settings(get_settings()))


def _source_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def _parse_body(request: Request, body: bytes, content_type: str) -> tuple[Optional[dict], Optional[dict]]:
    """
    (payload, form_params). Form-encoded bodies (Twilio) become dicts and
    keep their params for signature validation. payload is None when the
    body cannot be parsed.
    """
    if content_type.startswith(FORM_CONTENT_TYPE):
        form = await request.form()
        params = {key: value for key, value in form.items()}
        return params, params
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None, None
    if not isinstance(payload, dict):
        return None, None
    return payload, None


def _ack(status: str, **extra) -> dict:
    return {"status": status, **extra}


async def _finalize(db: AsyncSession, receipt_id, **kwargs) -> None:
    await finalize_receipt(db, receipt_id, **kwargs)
    await db.commit()


async def process_webhook(
    request: Request,
    db: AsyncSession,
    verifier: SignatureVerifier,
    provider_hint: Optional[str] = None,
) -> dict:
    """Shared pipeline behind every provider route."""
    timer = Timer().start()
    received_at = datetime.now(timezone.utc)
    body = await request.body()
    headers = dict(request.headers)
    content_type = (request.headers.get("content-type") or "").lower()

    receipt = await record_receipt(
        db,
        provider=provider_hint or UNKNOWN_PROVIDER,
        endpoint=request.url.path,
        headers=headers,
        raw_body=body,
        source_ip=_source_ip(request),
    )
    receipt_id = receipt.id
    await db.commit()

    payload, form_params = await _parse_body(request, body, content_type)
    provider = detect_provider(headers, payload or {}, hint=provider_hint)
    verify_as = provider if provider != UNKNOWN_PROVIDER else "generic"

    url = await get_webhook_url(request) if verify_as == "twilio" else None
    result = verifier.verify(verify_as, body, headers, url=url, params=form_params)
    receipt.signature = (result.signature or "")[:255] or None
    receipt.signature_header = result.header
    await db.commit()

    if not result.valid:
        logger.warning(
            "Invalid webhook signature: provider=%s ip=%s",
            provider, _source_ip(request),
            extra={"provider": provider, "receipt_id": str(receipt_id)},
        )
        await _finalize(
            db, receipt_id,
            response_code=401,
            response_message="Invalid webhook signature",
            parsed_successfully=payload is not None,
            signature_valid=False,
            detected_provider=provider,
            processing_time_ms=timer.stop(),
        )
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    if payload is None:
        logger.warning(
            "Unparseable webhook body from %s (%d bytes)", provider, len(body),
            extra={"provider": provider, "receipt_id": str(receipt_id)},
        )
        await _finalize(
            db, receipt_id,
            response_code=400,
            response_message="Invalid JSON body",
            parsed_successfully=False,
            signature_valid=result.receipt_flag,
            detected_provider=provider,
            processing_time_ms=timer.stop(),
        )
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    category = categorize(payload, provider)
    try:
        if category in ACK_ONLY_CATEGORIES:
            logger.info(
                "Acknowledged %s webhook from %s", category, provider,
                extra={"provider": provider, "receipt_id": str(receipt_id)},
            )
            response = _ack("ok", category=category, processed=0)
            linked_event_id = None
        else:
            events = normalize_all(payload, provider, received_at=received_at)
            results = await handle_delivery_report(
                db, events, signature=result.signature, received_at=received_at,
            )
            applied = sum(1 for r in results if r.status == APPLIED)
            linked_event_id = next((r.event_id for r in results if r.event_id), None)
            response = _ack(
                "ok",
                category=category,
                processed=len(results),
                applied=applied,
                results=[r.status for r in results],
            )
            if not events and category in EVENT_TYPES:
                logger.warning(
                    "Status webhook from %s produced no events", provider,
                    extra={"provider": provider, "receipt_id": str(receipt_id)},
                )

        await _finalize(
            db, receipt_id,
            response_code=200,
            response_message=json.dumps(response, default=str),
            parsed_successfully=True,
            signature_valid=result.receipt_flag,
            linked_event_id=linked_event_id,
            detected_provider=provider,
            processing_time_ms=timer.stop(),
        )
        return response

    except Exception as e:
        await db.rollback()
        logger.error(
            "Webhook processing failed for %s: %s", provider, str(e), exc_info=True,
            extra={"provider": provider, "receipt_id": str(receipt_id)},
        )
        await _finalize(
            db, receipt_id,
            response_code=200,
            response_message=f"Processing error: {str(e)[:500]}",
            parsed_successfully=True,
            signature_valid=result.receipt_flag,
            processing_status="failed",
            detected_provider=provider,
            processing_time_ms=timer.stop(),
        )
        await send_alert(
            AlertType.WEBHOOK_PROCESSING_FAILED,
            f"Webhook from {provider} failed: {str(e)[:200]}",
            extra={"receipt_id": str(receipt_id), "provider": provider},
        )
        return _ack("error", category=category, processed=0)


def _verification_challenge(
    verifier: SignatureVerifier,
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
) -> PlainTextResponse:
    expected = verifier.config.verify_token
    if mode == "subscribe" and expected and token == expected and challenge is not None:
        logger.info("Webhook URL verification succeeded")
        return PlainTextResponse(challenge)
    logger.warning("Webhook URL verification failed: mode=%s", mode)
    raise HTTPException(status_code=403, detail="Verification failed")


@router.get("/waba")
async def verify_waba_webhook(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    verifier: SignatureVerifier = Depends(get_signature_verifier),
):
    """URL ownership check: echo hub.challenge when the verify token matches."""
    return _verification_challenge(verifier, hub_mode, hub_verify_token, hub_challenge)


@router.post("/waba")
async def waba_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    verifier: SignatureVerifier = Depends(get_signature_verifier),
):
    """
    Shared WhatsApp Business endpoint. The provider is detected from the
    X-Provider header or the payload shape.
    """
    return await process_webhook(request, db, verifier)


@router.get("/{provider}")
async def verify_provider_webhook(
    provider: str,
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    verifier: SignatureVerifier = Depends(get_signature_verifier),
):
    return _verification_challenge(verifier, hub_mode, hub_verify_token, hub_challenge)


@router.post("/{provider}")
async def provider_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    verifier: SignatureVerifier = Depends(get_signature_verifier),
):
    """Provider-specific endpoint; the path names the provider."""
    return await process_webhook(request, db, verifier, provider_hint=provider.lower())
