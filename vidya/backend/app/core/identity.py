"""
Vidya Identity — the actor every core operation receives explicitly.

The identity provider is an upstream collaborator (session gateway); by the
time a request reaches this service it carries the account id in the
``X-Account-Id`` header (or ``account_id`` query param on WebSockets). The
core only reads the ``accounts`` table to turn that id into an ``Actor``.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.errors import DependencyFailure, Unauthorized, ValidationError
from app.models.models import Account

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    account_id: uuid.UUID
    display_name: str
    avatar_url: Optional[str] = None
    is_moderator: bool = False

    @classmethod
    def from_account(cls, account: Account) -> "Actor":
        return cls(
            account_id=account.id,
            display_name=account.display_name,
            avatar_url=account.avatar_url,
            is_moderator=bool(account.is_moderator),
        )


def parse_uuid(value: str, what: str = "id") -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {what}: {value!r}")


async def resolve_actor(raw_account_id: Optional[str], db: AsyncSession) -> Optional[Actor]:
    """Load the actor for a raw account id; None when no id was presented."""
    if not raw_account_id:
        return None
    account_id = parse_uuid(raw_account_id, "account id")
    try:
        account = await db.get(Account, account_id)
    except DBAPIError as e:
        raise DependencyFailure(f"Identity lookup failed: {e}") from e
    if account is None:
        raise Unauthorized("Unknown account")
    return Actor.from_account(account)


async def get_optional_actor(
    x_account_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Optional[Actor]:
    return await resolve_actor(x_account_id, db)


async def get_current_actor(
    actor: Optional[Actor] = Depends(get_optional_actor),
) -> Actor:
    if actor is None:
        raise Unauthorized("Sign in required")
    return actor


async def get_moderator(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_moderator:
        raise Unauthorized("Moderator role required")
    return actor
