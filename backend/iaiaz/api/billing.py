"""Billing API routes for Stripe integration."""

import logging
from datetime import datetime, timezone
from typing import Optional

import stripe
from fastapi import APIRouter, HTTPException, Depends, Request, Header
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.auth import get_current_user
from ..core.organizations import can_manage
from ..core.pricing import (
    CREDIT_PACKS,
    FAMILY_PRICE_PER_CHILD,
    FAMILY_PRICE_PER_EXTRA_CHILD,
    family_plan_quote,
    resolve_purchase,
)
from ..core.security import limiter
from ..db.database import get_db
from ..db.repository import CreditRepository, OrganizationRepository, UserRepository
from ..db.models import UserModel
from ..models.credits import CheckoutRequest, FamilySubscriptionRequest, OrgCheckoutRequest

router = APIRouter(prefix="/billing", tags=["billing"])
logger = logging.getLogger(__name__)

settings = get_settings()

# Initialize Stripe
stripe.api_key = settings.stripe_secret_key


# ============ Response Models ============


class CheckoutResponse(BaseModel):
    """Checkout session response."""
    checkout_url: str
    session_id: str


class PortalResponse(BaseModel):
    """Billing portal response."""
    portal_url: str


class SubscriptionResponse(BaseModel):
    """Family plan subscription state."""
    status: Optional[str]
    is_active: bool
    cancel_at_period_end: bool
    trial_end: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


# ============ Checkout Endpoints ============


@router.get("/packs")
async def list_packs() -> dict:
    """Credit packs available for purchase."""
    return {
        "packs": [
            {
                "id": pack.id,
                "name": pack.name,
                "credits": pack.credits,
                "price_cents": pack.price_cents,
                "popular": pack.popular,
            }
            for pack in CREDIT_PACKS.values()
        ],
        "custom": {"min": 1, "max": 100},
    }


@router.post("/checkout", response_model=CheckoutResponse)
@limiter.limit("10/minute")
async def create_checkout(
    request: Request,
    body: CheckoutRequest,
    user: UserModel = Depends(get_current_user),
):
    """Create a Stripe checkout session for a personal credit purchase."""
    if not settings.stripe_secret_key:
        raise HTTPException(status_code=500, detail="Stripe is not configured")

    pack = resolve_purchase(body.pack_id, body.custom_amount)
    if pack is None:
        raise HTTPException(status_code=400, detail="Invalid pack or amount")

    try:
        checkout_params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": "eur",
                        "product_data": {
                            "name": f"Crédits iaiaz - {pack.name}",
                            "description": f"{pack.credits:.2f} EUR de crédits IA",
                        },
                        "unit_amount": pack.price_cents,
                    },
                    "quantity": 1,
                }
            ],
            "allow_promotion_codes": True,
            "success_url": f"{settings.frontend_url}/credits?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{settings.frontend_url}/credits?canceled=true",
            "client_reference_id": user.id,
            "metadata": {
                "user_id": user.id,
                "pack_id": pack.id,
                "credits": str(pack.credits),
                "type": "personal_credits",
            },
        }

        # Use existing Stripe customer if available
        if user.stripe_customer_id:
            checkout_params["customer"] = user.stripe_customer_id
        else:
            checkout_params["customer_email"] = user.email

        session = stripe.checkout.Session.create(**checkout_params)

        logger.info(f"Created checkout session {session.id} for user {user.id}, pack {pack.id}")

        return CheckoutResponse(checkout_url=session.url, session_id=session.id)

    except stripe.error.StripeError as e:
        logger.error(f"Stripe error creating checkout: {e}")
        raise HTTPException(status_code=502, detail="Payment provider error")


@router.post("/organizations/{org_id}/checkout", response_model=CheckoutResponse)
@limiter.limit("10/minute")
async def create_org_checkout(
    request: Request,
    org_id: str,
    body: OrgCheckoutRequest,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create a Stripe checkout session to top up an organization's credits."""
    if not settings.stripe_secret_key:
        raise HTTPException(status_code=500, detail="Stripe is not configured")

    membership = await OrganizationRepository(db).get_membership(org_id, user.id)
    if not membership:
        raise HTTPException(status_code=404, detail="Organization not found")
    if not can_manage(membership.role):
        raise HTTPException(status_code=403, detail="Only owners and admins can buy credits")

    organization = membership.organization

    try:
        checkout_params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": "eur",
                        "product_data": {
                            "name": f"Crédits iaiaz - {organization.name}",
                            "description": f"{body.amount} EUR de crédits pour l'organisation",
                        },
                        "unit_amount": body.amount * 100,
                    },
                    "quantity": 1,
                }
            ],
            "allow_promotion_codes": True,
            "success_url": f"{settings.frontend_url}/org/{org_id}?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{settings.frontend_url}/org/{org_id}?canceled=true",
            "client_reference_id": user.id,
            "customer_email": organization.contact_email or user.email,
            "metadata": {
                "organization_id": org_id,
                "user_id": user.id,
                "credits": str(body.amount),
                "type": "organization_credits",
            },
        }

        session = stripe.checkout.Session.create(**checkout_params)

        logger.info(f"Created org checkout session {session.id} for organization {org_id}, {body.amount} EUR")

        return CheckoutResponse(checkout_url=session.url, session_id=session.id)

    except stripe.error.StripeError as e:
        logger.error(f"Stripe error creating org checkout: {e}")
        raise HTTPException(status_code=502, detail="Payment provider error")


# ============ Family Subscription ============


@router.post("/organizations/{org_id}/family-subscription", response_model=CheckoutResponse)
@limiter.limit("10/minute")
async def create_family_subscription_checkout(
    request: Request,
    org_id: str,
    body: FamilySubscriptionRequest,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a Stripe checkout session for the monthly family plan.

    The first two children pay the full seat price, further children only
    pay for their included credits. Each month the included credits are
    added to the family pool.
    """
    if not settings.stripe_secret_key:
        raise HTTPException(status_code=500, detail="Stripe is not configured")

    membership = await OrganizationRepository(db).get_membership(org_id, user.id)
    if not membership:
        raise HTTPException(status_code=404, detail="Organization not found")
    if not can_manage(membership.role):
        raise HTTPException(status_code=403, detail="Only parents can subscribe")

    organization = membership.organization
    if organization.type != "family":
        raise HTTPException(status_code=400, detail="Not a family organization")
    if organization.subscription_status == "active":
        raise HTTPException(status_code=400, detail="Subscription already active")

    quote = family_plan_quote(body.child_count)
    line_items = [
        {
            "price_data": {
                "currency": "eur",
                "product_data": {
                    "name": "iaiaz Famille - enfant",
                    "description": "Accès supervisé et crédits IA inclus",
                },
                "unit_amount": round(FAMILY_PRICE_PER_CHILD * 100),
                "recurring": {"interval": "month"},
            },
            "quantity": quote.paid_seats,
        }
    ]
    if quote.extra_children:
        line_items.append(
            {
                "price_data": {
                    "currency": "eur",
                    "product_data": {
                        "name": "iaiaz Famille - enfant supplémentaire",
                        "description": "Crédits IA inclus",
                    },
                    "unit_amount": round(FAMILY_PRICE_PER_EXTRA_CHILD * 100),
                    "recurring": {"interval": "month"},
                },
                "quantity": quote.extra_children,
            }
        )

    metadata = {
        "organization_id": org_id,
        "user_id": user.id,
        "child_count": str(quote.child_count),
        "credits": str(quote.monthly_credits),
        "type": "family_subscription",
    }

    try:
        checkout_params = {
            "mode": "subscription",
            "line_items": line_items,
            "allow_promotion_codes": True,
            "success_url": f"{settings.frontend_url}/family/{org_id}?welcome=true&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{settings.frontend_url}/family/{org_id}?canceled=true",
            "client_reference_id": user.id,
            "subscription_data": {"metadata": metadata},
            "metadata": metadata,
        }

        if organization.stripe_customer_id:
            checkout_params["customer"] = organization.stripe_customer_id
        else:
            checkout_params["customer_email"] = organization.contact_email or user.email

        session = stripe.checkout.Session.create(**checkout_params)

        logger.info(
            f"Created family subscription checkout {session.id} for organization {org_id}, "
            f"{quote.child_count} children, {quote.monthly_price_cents / 100:.2f} EUR/month"
        )

        return CheckoutResponse(checkout_url=session.url, session_id=session.id)

    except stripe.error.StripeError as e:
        logger.error(f"Stripe error creating family subscription checkout: {e}")
        raise HTTPException(status_code=502, detail="Payment provider error")


@router.get("/organizations/{org_id}/subscription", response_model=SubscriptionResponse)
async def get_family_subscription(
    org_id: str,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    membership = await OrganizationRepository(db).get_membership(org_id, user.id)
    if not membership:
        raise HTTPException(status_code=404, detail="Organization not found")
    if not can_manage(membership.role):
        raise HTTPException(status_code=403, detail="Only parents can view the subscription")

    organization = membership.organization
    return SubscriptionResponse(
        status=organization.subscription_status,
        is_active=organization.subscription_status in ("active", "trialing"),
        cancel_at_period_end=bool(organization.subscription_cancel_at_period_end),
        trial_end=organization.trial_end,
        current_period_end=organization.subscription_current_period_end,
    )


@router.post("/portal", response_model=PortalResponse)
@limiter.limit("10/minute")
async def create_billing_portal(
    request: Request,
    user: UserModel = Depends(get_current_user),
):
    """Create a Stripe billing portal session."""
    if not settings.stripe_secret_key:
        raise HTTPException(status_code=500, detail="Stripe is not configured")

    if not user.stripe_customer_id:
        raise HTTPException(status_code=400, detail="No Stripe customer found")

    try:
        session = stripe.billing_portal.Session.create(
            customer=user.stripe_customer_id,
            return_url=f"{settings.frontend_url}/credits",
        )
        return PortalResponse(portal_url=session.url)

    except stripe.error.StripeError as e:
        logger.error(f"Stripe error creating billing portal: {e}")
        raise HTTPException(status_code=502, detail="Payment provider error")


# ============ Webhook Handler ============

webhook_router = APIRouter(tags=["webhooks"])


@webhook_router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
):
    """Handle Stripe webhook events."""
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    payload = await request.body()

    try:
        event = stripe.Webhook.construct_event(
            payload,
            stripe_signature,
            settings.stripe_webhook_secret,
        )
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.error.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")

    logger.info(f"Received Stripe webhook: {event['type']}")

    # Handle the event
    try:
        if event["type"] == "checkout.session.completed":
            await handle_checkout_completed(event["data"]["object"], db)
        elif event["type"] in ("customer.subscription.updated", "customer.subscription.deleted"):
            await handle_subscription_changed(event["data"]["object"], event["type"], db)
        elif event["type"] == "invoice.paid":
            await handle_invoice_paid(event["data"]["object"], db)
        elif event["type"] == "invoice.payment_failed":
            await handle_payment_failed(event["data"]["object"], db)
        else:
            logger.debug(f"Unhandled webhook event: {event['type']}")
    except Exception as e:
        logger.error(f"Error handling webhook {event['type']}: {e}")
        # Don't raise - return 200 to acknowledge receipt
        # Stripe will retry failed webhooks

    return {"received": True}


async def handle_checkout_completed(session: dict, db: AsyncSession):
    """Credit a completed checkout to the user or organization that paid."""
    metadata = session.get("metadata") or {}
    payment_id = session.get("payment_intent") or session.get("id")

    if session.get("payment_status") not in (None, "paid", "no_payment_required"):
        logger.info(f"Checkout session {session.get('id')} not paid yet, ignoring")
        return

    if metadata.get("type") == "family_subscription":
        await handle_family_subscription_started(session, db)
        return

    try:
        credits = float(metadata.get("credits", 0))
    except (TypeError, ValueError):
        logger.error(f"Invalid credits in checkout session {session.get('id')}: {metadata.get('credits')}")
        return

    if credits <= 0:
        logger.error(f"No credits in checkout session {session.get('id')}")
        return

    if metadata.get("type") == "organization_credits":
        org_id = metadata.get("organization_id")
        if not org_id:
            logger.error("No organization_id in checkout session")
            return
        organization = await OrganizationRepository(db).add_credits(
            org_id,
            credits,
            transaction_type="purchase",
            user_id=metadata.get("user_id"),
            description=f"Achat de {credits:.2f} EUR de crédits",
            stripe_payment_id=payment_id,
        )
        if organization is None:
            logger.error(f"Organization {org_id} not found for checkout {session.get('id')}")
            return
        logger.info(f"Organization {org_id} purchased {credits:.2f} EUR of credits")
        return

    user_id = session.get("client_reference_id") or metadata.get("user_id")
    if not user_id:
        logger.error("No user_id in checkout session")
        return

    new_balance = await CreditRepository(db).grant(
        user_id=user_id,
        amount=credits,
        grant_type="purchase",
        description=f"Achat de {credits:.2f} EUR de crédits ({metadata.get('pack_id', 'custom')})",
        stripe_payment_id=payment_id,
    )
    if new_balance is None:
        logger.error(f"User {user_id} not found for checkout {session.get('id')}")
        return

    customer_id = session.get("customer")
    if customer_id:
        await UserRepository(db).set_stripe_customer_id(user_id, customer_id)

    logger.info(f"User {user_id} purchased {credits:.2f} EUR of credits, balance {new_balance:.2f}")


def _metadata_credits(metadata: dict, reference: Optional[str]) -> float:
    try:
        return float(metadata.get("credits", 0))
    except (TypeError, ValueError):
        logger.error(f"Invalid credits in {reference}: {metadata.get('credits')}")
        return 0.0


async def _grant_family_credits(
    repo: OrganizationRepository,
    org_id: str,
    metadata: dict,
    payment_id: Optional[str],
) -> None:
    """Add a month of included credits to the family pool, once per Stripe payment."""
    credits = _metadata_credits(metadata, payment_id)
    if credits <= 0:
        return
    organization = await repo.add_credits(
        org_id,
        credits,
        transaction_type="subscription",
        user_id=metadata.get("user_id"),
        description=f"Abonnement famille : {credits:.2f} EUR de crédits du mois",
        stripe_payment_id=payment_id,
    )
    if organization is not None:
        logger.info(f"Family {org_id} received {credits:.2f} EUR of monthly credits")


async def handle_family_subscription_started(session: dict, db: AsyncSession):
    """Activate a family plan once its subscription checkout completes."""
    metadata = session.get("metadata") or {}
    org_id = metadata.get("organization_id")
    if not org_id:
        logger.error(f"No organization_id in subscription checkout {session.get('id')}")
        return

    repo = OrganizationRepository(db)
    organization = await repo.update_subscription(
        org_id,
        "active",
        stripe_subscription_id=session.get("subscription"),
        stripe_customer_id=session.get("customer"),
        cancel_at_period_end=False,
    )
    if organization is None:
        logger.error(f"Organization {org_id} not found for subscription checkout {session.get('id')}")
        return

    await _grant_family_credits(repo, org_id, metadata, session.get("id"))


async def _find_subscribed_organization(
    repo: OrganizationRepository,
    subscription_id: Optional[str],
    metadata: dict,
) -> Optional[str]:
    org_id = metadata.get("organization_id")
    if org_id:
        return org_id
    if subscription_id:
        organization = await repo.get_by_stripe_subscription(subscription_id)
        if organization:
            return organization.id
    return None


async def handle_subscription_changed(subscription: dict, event_type: str, db: AsyncSession):
    """Mirror a subscription update or deletion on the family organization."""
    repo = OrganizationRepository(db)
    subscription_id = subscription.get("id")
    org_id = await _find_subscribed_organization(repo, subscription_id, subscription.get("metadata") or {})
    if not org_id:
        logger.warning(f"No organization for subscription {subscription_id}")
        return

    if event_type == "customer.subscription.deleted":
        status = "canceled"
    else:
        status = subscription.get("status") or "active"

    period_end = subscription.get("current_period_end")
    await repo.update_subscription(
        org_id,
        status,
        stripe_subscription_id=subscription_id,
        stripe_customer_id=subscription.get("customer"),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        current_period_end=datetime.fromtimestamp(period_end, tz=timezone.utc) if period_end else None,
    )


async def handle_invoice_paid(invoice: dict, db: AsyncSession):
    """Renewal invoices refill the family pool. The first month comes with the checkout."""
    if invoice.get("billing_reason") != "subscription_cycle":
        return

    details = invoice.get("subscription_details") or {}
    metadata = details.get("metadata") or {}
    repo = OrganizationRepository(db)
    org_id = await _find_subscribed_organization(repo, invoice.get("subscription"), metadata)
    if not org_id:
        logger.warning(f"No organization for invoice {invoice.get('id')}")
        return

    await _grant_family_credits(repo, org_id, metadata, invoice.get("id"))


async def handle_payment_failed(invoice: dict, db: AsyncSession):
    """Handle failed invoice payment."""
    subscription_id = invoice.get("subscription")
    if not subscription_id:
        return

    repo = OrganizationRepository(db)
    organization = await repo.get_by_stripe_subscription(subscription_id)
    if not organization:
        return

    org_id = organization.id
    await repo.update_subscription(org_id, "past_due")
    logger.warning(f"Payment failed for family {org_id}, subscription marked as past_due")
