from __future__ import annotations

from typing import Annotated, AsyncIterator

import stripe
from fastapi import Depends, Request
from loguru import logger
from sqlmodel.ext.asyncio.session import AsyncSession

from resumate.gateway.auth import SessionUser, authenticate
from resumate.gateway.config import Settings, get_settings
from resumate.gateway.constants import EXTRACTION_COST_CREDITS, STRIPE_API_TEST_KEY_PREFIX
from resumate.gateway.db import create_session
from resumate.gateway.domain_models import User
from resumate.gateway.exceptions import BillingFrozenError, BillingNotConfiguredError, InsufficientCreditsError
from resumate.gateway.processor import StripeProcessor
from resumate.gateway.users import resolve_user

SettingsDep = Annotated[Settings, Depends(get_settings)]


async def get_db_session(settings: Settings = Depends(get_settings)) -> AsyncIterator[AsyncSession]:
    async for session in create_session(settings):
        yield session


DbSession = Annotated[AsyncSession, Depends(get_db_session)]
AuthenticatedUser = Annotated[SessionUser, Depends(authenticate)]


async def get_current_user(request: Request, identity: AuthenticatedUser, db: DbSession) -> User:
    user = await resolve_user(db, identity)
    request.state.user_id = user.id
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


def get_stripe_client(settings: SettingsDep) -> stripe.StripeClient:
    if not settings.stripe_secret_key:
        raise BillingNotConfiguredError()
    if settings.stripe_test_mode_only and not settings.stripe_secret_key.startswith(STRIPE_API_TEST_KEY_PREFIX):
        logger.error("Refusing live Stripe key while STRIPE_TEST_MODE_ONLY is set")
        raise BillingNotConfiguredError()
    return stripe.StripeClient(settings.stripe_secret_key)


def get_payment_processor(
    settings: SettingsDep,
    client: Annotated[stripe.StripeClient, Depends(get_stripe_client)],
) -> StripeProcessor:
    return StripeProcessor(client, settings)


PaymentProcessorDep = Annotated[StripeProcessor, Depends(get_payment_processor)]


async def require_extraction_credits(user: CurrentUser, settings: SettingsDep) -> User:
    """Gate for the extraction pipeline: reject before any work when the user can't pay for it."""
    if not settings.billing_enabled:
        return user
    if user.scraping_frozen:
        raise BillingFrozenError()
    if user.credits < EXTRACTION_COST_CREDITS:
        raise InsufficientCreditsError(required=EXTRACTION_COST_CREDITS, available=user.credits)
    return user


ExtractionUser = Annotated[User, Depends(require_extraction_credits)]
