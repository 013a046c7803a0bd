from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from resumate.gateway.auth import SessionUser
from resumate.gateway.domain_models import PendingBillingIntent, User


async def resolve_user(db: AsyncSession, identity: SessionUser) -> User:
    """Local account for a signed-in identity, created on first sign-in.

    Accounts are also matched by email, so a user whose identity-provider id
    changed (re-registration, provider migration) keeps their plan and credits.
    """
    user = await db.get(User, identity.id)
    if user is not None:
        return user

    if identity.primary_email:
        result = await db.exec(select(User).where(User.email == identity.primary_email))
        user = result.first()
        if user is not None:
            logger.bind(user_id=user.id, session_user_id=identity.id).warning("Resolved user by email")
            return user

    user = User(id=identity.id, email=identity.primary_email, name=identity.display_name)
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent first request for the same identity
        await db.rollback()
        existing = await db.get(User, identity.id)
        if existing is None:
            raise
        return existing

    logger.bind(user_id=user.id).info("Created user")
    return user


async def find_user_by_customer(db: AsyncSession, customer_id: str | None) -> User | None:
    if not customer_id:
        return None
    result = await db.exec(
        select(User)
        .where(User.billing_customer_ref == customer_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.first()


async def find_user_by_checkout_session(db: AsyncSession, session_id: str) -> User | None:
    """Owner of the intent a checkout session was attached to, for sessions whose customer we haven't linked yet."""
    result = await db.exec(
        select(User)
        .join(PendingBillingIntent, PendingBillingIntent.user_id == User.id)
        .where(PendingBillingIntent.checkout_session_id == session_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.first()
