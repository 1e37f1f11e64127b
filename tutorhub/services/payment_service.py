"""Stripe Connect passthrough: tutor onboarding and split-payment checkout.

Prices are quoted per hour in pounds; everything sent to Stripe is in pence.
The platform keeps ``PLATFORM_FEE_PERCENT`` through ``application_fee_amount``
and the rest is transferred to the tutor's connected account.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from tutorhub.config import settings
from tutorhub.repositories.payment_repository import PaymentRepository
from tutorhub.repositories.profile_repository import ProfileRepository
from tutorhub.schemas.user import CurrentUser
from tutorhub.services.exceptions import PaymentError, PaymentsNotConfigured, ProfileNotFound

logger = logging.getLogger(__name__)

EXAM_RATE_KEYS = {
    "tmua": "TMUA",
    "mat": "MAT",
    "esat": "ESAT",
    "interview-prep": "Interview prep",
    "interview prep": "Interview prep",
}

CONNECT_NOT_ENABLED = "STRIPE_CONNECT_NOT_ENABLED"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class LessonPrice:
    hourly_rate: float
    lesson_quantity: int
    # pounds, after any bulk discount
    total_price: float
    discount_applied: bool
    platform_fee: int
    tutor_amount: int

    @property
    def total_amount(self) -> int:
        return self.platform_fee + self.tutor_amount

    @property
    def unit_amount(self) -> int:
        return round_half_up(self.total_price * 100)


def resolve_hourly_rate(exam_rates: Optional[Dict[str, float]], exam_type: str, custom_amount: Optional[float] = None) -> float:
    if custom_amount is not None and custom_amount > 0:
        return custom_amount
    rates = exam_rates or {}
    key = EXAM_RATE_KEYS.get(exam_type.lower(), exam_type.upper())
    rate = rates.get(key)
    if rate:
        return rate
    return settings.DEFAULT_HOURLY_RATE


def calculate_lesson_price(hourly_rate: float, lesson_quantity: int) -> LessonPrice:
    total = hourly_rate * lesson_quantity
    discount_applied = lesson_quantity >= settings.BULK_DISCOUNT_THRESHOLD
    if discount_applied:
        total = round_half_up(total * (1 - settings.BULK_DISCOUNT_RATE))
    fee_percent = settings.PLATFORM_FEE_PERCENT
    return LessonPrice(
        hourly_rate=hourly_rate,
        lesson_quantity=lesson_quantity,
        total_price=total,
        discount_applied=discount_applied,
        platform_fee=round_half_up(total * 100 * fee_percent),
        tutor_amount=round_half_up(total * 100 * (1 - fee_percent)),
    )


def _format_rate(rate: float) -> str:
    return f"{rate:g}"


def get_stripe_client() -> stripe.StripeClient:
    if not settings.STRIPE_SECRET_KEY:
        raise PaymentsNotConfigured("STRIPE_SECRET_KEY is not set")
    return stripe.StripeClient(settings.STRIPE_SECRET_KEY, stripe_version=settings.STRIPE_API_VERSION)


class PaymentService:

    def __init__(self, profile_repo: ProfileRepository, payment_repo: PaymentRepository, stripe_client) -> None:
        self._profile_repo = profile_repo
        self._payment_repo = payment_repo
        self._stripe = stripe_client

    async def _call(self, step: str, fn, *args, **kwargs):
        # the SDK is synchronous; keep the event loop free
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            logger.error("Stripe call failed during %s: %s", step, exc)
            message = getattr(exc, "user_message", None) or str(exc)
            if "signed up for Connect" in str(exc):
                raise PaymentError(
                    "Stripe Connect is not enabled for this account. Enable it in the Stripe Dashboard under Connect > Settings.",
                    code=CONNECT_NOT_ENABLED,
                ) from exc
            raise PaymentError(message, code=getattr(exc, "code", None), upstream=True) from exc

    async def _profile(self, user_id: str) -> Dict[str, Any]:
        profile = await self._profile_repo.get_by_id(user_id)
        if not profile:
            raise ProfileNotFound("User profile not found")
        return profile

    async def _onboarding_link(self, account_id: str, origin: str) -> str:
        link = await self._call(
            "account link",
            self._stripe.account_links.create,
            params={
                "account": account_id,
                "refresh_url": f"{origin}/profile",
                "return_url": f"{origin}/profile",
                "type": "account_onboarding",
            },
        )
        return link.url

    async def create_connect_account(self, user: CurrentUser, origin: str) -> Dict[str, Any]:
        profile = await self._profile(user.id)
        account_id = profile.get("stripe_account_id")

        if account_id:
            account = await self._call("retrieve account", self._stripe.accounts.retrieve, account_id)
            result = {
                "accountId": account_id,
                "charges_enabled": account.charges_enabled,
                "payouts_enabled": account.payouts_enabled,
                "details_submitted": account.details_submitted,
                "existing": True,
            }
            if account.charges_enabled and account.payouts_enabled:
                return result
            logger.info("Connect account %s incomplete, issuing a new onboarding link", account_id)
            result["onboardingUrl"] = await self._onboarding_link(account_id, origin)
            result["setupIncomplete"] = True
            return result

        account = await self._call(
            "create account",
            self._stripe.accounts.create,
            params={
                "type": "standard",
                "country": "GB",
                "email": user.email or profile.get("email"),
                "business_type": "individual",
                "capabilities": {
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
                "metadata": {"user_id": user.id, "user_type": "tutor", "name": profile.get("name") or ""},
            },
        )
        logger.info("Created Connect account %s for user %s", account.id, user.id)
        await self._profile_repo.update_fields(
            user.id,
            {
                "stripe_account_id": account.id,
                "charges_enabled": account.charges_enabled,
                "payouts_enabled": account.payouts_enabled,
            },
        )
        return {
            "accountId": account.id,
            "onboardingUrl": await self._onboarding_link(account.id, origin),
            "charges_enabled": account.charges_enabled,
            "payouts_enabled": account.payouts_enabled,
            "details_submitted": account.details_submitted,
            "existing": False,
        }

    async def check_connect_status(self, user: CurrentUser) -> Dict[str, Any]:
        profile = await self._profile(user.id)
        account_id = profile.get("stripe_account_id")
        if not account_id:
            return {"hasAccount": False, "message": "No Stripe Connect account found"}

        account = await self._call("retrieve account", self._stripe.accounts.retrieve, account_id)
        await self._profile_repo.update_fields(
            user.id,
            {"charges_enabled": account.charges_enabled, "payouts_enabled": account.payouts_enabled},
        )

        login_link_url = None
        if account.charges_enabled:
            try:
                login_link = await self._call("login link", self._stripe.accounts.login_links.create, account_id)
                login_link_url = login_link.url
            except PaymentError:
                logger.warning("Could not create login link for %s", account_id)

        return {
            "hasAccount": True,
            "accountId": account_id,
            "charges_enabled": account.charges_enabled,
            "payouts_enabled": account.payouts_enabled,
            "details_submitted": account.details_submitted,
            "loginLinkUrl": login_link_url,
            "country": account.country,
        }

    async def create_checkout(
        self,
        user: CurrentUser,
        tutor_id: str,
        exam_type: str,
        lesson_quantity: int,
        origin: str,
        custom_amount: Optional[float] = None,
    ) -> Dict[str, Any]:
        if not user.email:
            raise PaymentError("User email is required for checkout")
        tutor = await self._profile_repo.get_by_id(tutor_id)
        if not tutor:
            raise ProfileNotFound("Tutor not found")
        account_id = tutor.get("stripe_account_id")
        if not account_id or not tutor.get("charges_enabled"):
            raise PaymentError(
                "Tutor has not completed their Stripe Connect setup. Please ask the tutor to complete "
                "their payment account setup before booking lessons."
            )

        rate = resolve_hourly_rate(tutor.get("exam_rates"), exam_type, custom_amount)
        price = calculate_lesson_price(rate, lesson_quantity)
        logger.info(
            "Checkout for tutor %s: %d x %s, total %s pence, fee %s",
            tutor_id,
            lesson_quantity,
            rate,
            price.total_amount,
            price.platform_fee,
        )

        customers = await self._call(
            "customer lookup", self._stripe.customers.list, params={"email": user.email, "limit": 1}
        )
        customer_id = customers.data[0].id if customers.data else None

        plural = "s" if lesson_quantity > 1 else ""
        description = f"{lesson_quantity} lesson{plural} - £{_format_rate(rate)}/hour"
        if price.discount_applied:
            description += f" ({round(settings.BULK_DISCOUNT_RATE * 100):d}% bulk discount applied)"
        metadata = {"tutorId": tutor_id, "examType": exam_type, "lessonQuantity": str(lesson_quantity)}
        params: Dict[str, Any] = {
            "line_items": [
                {
                    "price_data": {
                        "currency": settings.CURRENCY,
                        "product_data": {
                            "name": f"{exam_type.upper()} Tutoring with {tutor.get('name') or 'your tutor'}",
                            "description": description,
                        },
                        "unit_amount": price.unit_amount,
                    },
                    "quantity": 1,
                }
            ],
            "mode": "payment",
            "success_url": f"{origin}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{origin}/team#{exam_type}",
            "payment_intent_data": {
                "application_fee_amount": price.platform_fee,
                "transfer_data": {"destination": account_id},
                "metadata": {**metadata, "platform_fee": str(price.platform_fee)},
            },
            "metadata": {**metadata, "connected_account_id": account_id},
        }
        if customer_id:
            params["customer"] = customer_id
        else:
            params["customer_email"] = user.email

        session = await self._call("checkout session", self._stripe.checkout.sessions.create, params=params)
        await self._payment_repo.create(
            {
                "student_id": user.id,
                "tutor_id": tutor_id,
                "stripe_session_id": session.id,
                "connected_account_id": account_id,
                "amount": price.total_amount,
                "platform_fee": price.platform_fee,
                "tutor_amount": price.tutor_amount,
                "currency": settings.CURRENCY,
                "exam_type": exam_type,
                "lesson_quantity": lesson_quantity,
            }
        )
        return {"url": session.url, "sessionId": session.id}

    async def handle_payment_success(self, session_id: str) -> Dict[str, Any]:
        session = await self._call("retrieve session", self._stripe.checkout.sessions.retrieve, session_id)
        if session.payment_status != "paid":
            return {"success": False, "status": session.payment_status}
        updated = await self._payment_repo.mark_completed(session_id, session.payment_intent)
        payment = await self._payment_repo.get_by_session(session_id)
        if updated:
            logger.info("Payment for session %s completed", session_id)
        return {
            "success": True,
            "status": session.payment_status,
            "payment": {
                "tutor_id": payment.get("tutor_id"),
                "exam_type": payment.get("exam_type"),
                "lesson_quantity": payment.get("lesson_quantity"),
                "amount": payment.get("amount"),
                "currency": payment.get("currency"),
            }
            if payment
            else None,
        }

    async def delete_connect_account(self, account_id: str) -> None:
        await self._call("delete account", self._stripe.accounts.delete, account_id)
