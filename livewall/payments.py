"""
Stripe checkout and webhook handling for upload quota upgrades.

Both entry points return ``(body, status)`` so the routes only have to
jsonify the result.
"""
import logging
from dataclasses import dataclass, field

import stripe

from livewall.errors import StoreError

logger = logging.getLogger(__name__)

PLAN_QUOTAS = {
    'basic': 500,
    'premium': 1000,
    'deluxe': 5000,
}
DEFAULT_PLAN = 'basic'

# The webhook grants this quota whatever tier was bought.
WEBHOOK_UPLOAD_LIMIT = 200

CHECKOUT_COMPLETED = 'checkout.session.completed'


@dataclass
class StripeSettings:
    secret_key: str = None
    webhook_secret: str = None
    prices: dict = field(default_factory=dict)

    @classmethod
    def from_config(cls, config):
        return cls(
            secret_key=config.get('STRIPE_SECRET_KEY'),
            webhook_secret=config.get('STRIPE_WEBHOOK_SECRET'),
            prices={
                'basic': config.get('STRIPE_PRICE_BASIC'),
                'premium': config.get('STRIPE_PRICE_PREMIUM'),
                'deluxe': config.get('STRIPE_PRICE_DELUXE'),
            },
        )


def _field(obj, key):
    # Stripe objects and plain dicts both support item access
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def create_checkout_session(store, settings, user_id, event_id, event_code, origin, plan=None):
    """Start a Stripe Checkout payment for an event the organizer owns."""
    if not event_id or not event_code:
        return {"error": "Event ID and event code are required"}, 400

    plan = plan or DEFAULT_PLAN
    if plan not in PLAN_QUOTAS:
        return {"error": f"Unknown plan: {plan}"}, 400

    try:
        event = store.get_owned_event(event_id, user_id)
    except StoreError as e:
        logger.error(f"[PAYMENTS] Event lookup failed - event_id: {event_id}, error: {e.message}")
        event = None
    if event is None or event.get('event_code') != event_code:
        logger.warning(f"[SECURITY] Upgrade for foreign or unknown event - event_id: {event_id}, user_id: {user_id}")
        return {"error": "Event not found or access denied"}, 404

    quota = PLAN_QUOTAS[plan]
    if (event.get('upload_limit') or 0) >= quota:
        return {"error": f"Event already upgraded to {event['upload_limit']} uploads"}, 400

    price = settings.prices.get(plan)
    if not settings.secret_key or not price:
        logger.error(f"[PAYMENTS] Stripe is not configured - plan: {plan}, has_secret_key: {bool(settings.secret_key)}, has_price: {bool(price)}")
        return {"error": "Failed to create checkout session"}, 500

    try:
        session = stripe.checkout.Session.create(
            api_key=settings.secret_key,
            payment_method_types=['card'],
            line_items=[{'price': price, 'quantity': 1}],
            mode='payment',
            success_url=f"{origin}/event/{event_code}/dashboard?upgrade=success",
            cancel_url=f"{origin}/event/{event_code}/dashboard?upgrade=cancelled",
            metadata={
                'eventId': str(event_id),
                'userId': str(user_id),
                'eventCode': event_code,
                'plan': plan,
            },
        )
    except stripe.StripeError as e:
        logger.error(f"[PAYMENTS] Checkout session failed - event_id: {event_id}, plan: {plan}, error: {str(e)}")
        return {"error": "Failed to create checkout session"}, 500

    logger.info(f"[PAYMENTS] Checkout session created - event_id: {event_id}, plan: {plan}")
    return {"url": _field(session, 'url')}, 200


def handle_webhook(store, settings, payload, signature):
    """
    Verify and apply a Stripe webhook delivery.

    Only ``checkout.session.completed`` changes anything: the event named in
    the session metadata gets ``WEBHOOK_UPLOAD_LIMIT`` uploads.
    """
    try:
        if not settings.webhook_secret:
            raise RuntimeError("STRIPE_WEBHOOK_SECRET is not configured")

        if not signature:
            logger.warning("[PAYMENTS] Webhook without signature")
            return {"error": "No signature provided"}, 400

        try:
            event = stripe.Webhook.construct_event(payload, signature, settings.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"[SECURITY] Webhook signature verification failed - error: {str(e)}")
            return {"error": "Invalid signature"}, 400

        event_type = _field(event, 'type')
        if event_type != CHECKOUT_COMPLETED:
            logger.info(f"[PAYMENTS] Ignoring webhook event - type: {event_type}")
            return {"received": True}, 200

        session = _field(_field(event, 'data'), 'object')
        metadata = _field(session, 'metadata')
        event_id = _field(metadata, 'eventId')
        user_id = _field(metadata, 'userId')
        if not event_id or not user_id:
            logger.error(f"[PAYMENTS] Missing metadata in webhook - event_id: {event_id}, user_id: {user_id}")
            return {"error": "Missing metadata"}, 400

        try:
            current = store.get_owned_event(event_id, user_id)
        except StoreError as e:
            logger.error(f"[PAYMENTS] Failed to fetch event - event_id: {event_id}, error: {e.message}")
            return {"error": "Failed to fetch event"}, 500
        if current is None:
            logger.error(f"[PAYMENTS] Event for webhook not found - event_id: {event_id}, user_id: {user_id}")
            return {"error": "Failed to fetch event"}, 500

        try:
            store.set_upload_limit(event_id, user_id, WEBHOOK_UPLOAD_LIMIT)
        except StoreError as e:
            logger.error(f"[PAYMENTS] Failed to update upload limit - event_id: {event_id}, error: {e.message}")
            return {"error": "Failed to update event"}, 500

        logger.info(f"[PAYMENTS] Event upgraded - event_id: {event_id}, user_id: {user_id}, plan: {_field(metadata, 'plan')}, from: {current.get('upload_limit')}, to: {WEBHOOK_UPLOAD_LIMIT}")
        return {"received": True}, 200

    except Exception as e:
        logger.exception(f"[PAYMENTS] Webhook handler failed - error: {str(e)}")
        return {"error": "Webhook handler failed"}, 500
