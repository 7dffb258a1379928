import logging
from typing import Optional

import stripe
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from portal.core.config import Settings
from portal.core.errors import UpstreamUnavailableError
from portal.core.types import CancelRequest, CheckoutRequest, RefundRequest, SubscriptionStatusResponse
from portal.data.records import User
from portal.routes.deps import admin_user, current_user, get_engine, get_settings, get_webhooks, optional_user
from portal.services.engine import AccessEngine
from portal.services.webhooks import WebhookProcessor

router = APIRouter(prefix="/api/payments")
log = logging.getLogger("payments")


@router.post("/create-checkout-session")
async def create_checkout_session(
    req: CheckoutRequest,
    user: Optional[User] = Depends(optional_user),
    engine: AccessEngine = Depends(get_engine),
):
    # Anonymous buyers are fine; a signed-in user is stamped into the checkout metadata
    return await engine.start_checkout(user=user, email=req.email, discord_id=req.discordId, username=req.username)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    bg: BackgroundTasks,
    cfg: Settings = Depends(get_settings),
    engine: AccessEngine = Depends(get_engine),
    webhooks: WebhookProcessor = Depends(get_webhooks),
):
    # Only payments endpoint without auth; protected by Stripe signature verification
    if not (cfg.STRIPE_WEBHOOK_SECRET and engine.billing is not None):
        return JSONResponse({"ok": False, "reason": "stripe_not_configured"}, status_code=400)

    payload = await request.body()
    sig: Optional[str] = request.headers.get("stripe-signature")
    try:
        event = engine.billing.construct_event(payload, sig, cfg.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        log.warning("stripe.webhook signature rejected: %s", e)
        return JSONResponse({"ok": False, "reason": "invalid_signature"}, status_code=400)

    try:
        outcome = await webhooks.handle(event, bg)
    except UpstreamUnavailableError:
        # Stripe retries on non-2xx
        log.exception("stripe.webhook billing unreachable for event=%s", event.get("type"))
        return JSONResponse({"ok": False}, status_code=503)
    return {"ok": True, "received": True, "outcome": outcome}


@router.get("/subscription", response_model=SubscriptionStatusResponse)
async def subscription_status(user: User = Depends(current_user), engine: AccessEngine = Depends(get_engine)):
    return await engine.subscription_status(user)


@router.post("/cancel")
async def cancel_subscription(
    bg: BackgroundTasks,
    req: Optional[CancelRequest] = None,
    user: User = Depends(current_user),
    engine: AccessEngine = Depends(get_engine),
):
    at_period_end = req.cancelAtPeriodEnd if req is not None else True
    result = await engine.cancel(user, at_period_end=at_period_end, bg=bg)
    return {"success": True, "message": result.message, "subscription": result.subscription.public()}


@router.get("/customer-portal")
async def customer_portal(user: User = Depends(current_user), engine: AccessEngine = Depends(get_engine)):
    return {"url": await engine.customer_portal_url(user)}


@router.post("/admin/refund")
async def admin_refund(
    req: RefundRequest,
    bg: BackgroundTasks,
    admin: User = Depends(admin_user),
    engine: AccessEngine = Depends(get_engine),
):
    result = await engine.refund(
        admin,
        req.paymentIntentId,
        amount=req.amount,
        reason=req.reason,
        user_id=req.userId,
        metadata=req.metadata,
        bg=bg,
    )
    return {"success": True, "refund": result.refund, "canceledSubscriptions": result.canceled}
