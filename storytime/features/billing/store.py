"""
Entitlement store: reads and writes the `users` table.

All writes are full-field overwrites keyed by user id, so replaying the
same update produces the same row.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from sqlalchemy import select, insert, update, func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from storytime.core.database import create_session_factory, session_scope, users
from storytime.models.entitlement import EntitlementRecord, RECORD_COLUMNS


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_columns(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - set(RECORD_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown entitlement fields: {', '.join(sorted(unknown))}")
    return {RECORD_COLUMNS[name]: value for name, value in fields.items()}


class EntitlementStore:
    """SQLAlchemy Core access to entitlement records."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = create_session_factory(engine)

    def get(self, user_id: str) -> Optional[EntitlementRecord]:
        with session_scope(self._session_factory) as session:
            row = session.execute(select(users).where(users.c.id == user_id)).first()
            if not row:
                return None
            return EntitlementRecord(
                user_id=row.id,
                email=row.email,
                billing_customer_id=row.stripe_customer_id,
                subscription_status=row.subscription_status,
                active_plan_id=row.active_plan_price_id,
                period_end=_as_utc(row.subscription_current_period_end),
                minutes_limit=row.monthly_minutes_limit,
                minutes_used=row.minutes_used_this_period,
            )

    def ensure_user(self, user_id: str, email: Optional[str] = None) -> EntitlementRecord:
        """Get-or-create the row for an authenticated user."""
        existing = self.get(user_id)
        if existing:
            return existing

        try:
            with session_scope(self._session_factory) as session:
                session.execute(insert(users).values(id=user_id, email=email))
        except IntegrityError:
            # Created concurrently by another request
            pass
        return self.get(user_id)

    def get_customer_id(self, user_id: str) -> Optional[str]:
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(users.c.stripe_customer_id).where(users.c.id == user_id)
            ).scalar_one_or_none()

    def set_customer_id_if_absent(self, user_id: str, customer_id: str) -> bool:
        """
        Persist the Stripe customer id unless one is already stored.

        Returns:
            True if this call wrote the id, False if the row already had one
            (or does not exist).
        """
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(users)
                .where(users.c.id == user_id, users.c.stripe_customer_id.is_(None))
                .values(stripe_customer_id=customer_id, updated_at=datetime.now(timezone.utc))
            )
            return result.rowcount > 0

    def find_user_by_customer(self, customer_id: str) -> Optional[str]:
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(users.c.id).where(users.c.stripe_customer_id == customer_id)
            ).scalars().first()

    def apply_update(self, user_id: str, fields: Dict[str, Any]) -> bool:
        """
        Overwrite the given entitlement fields.

        Returns:
            True if a row matched the user id.
        """
        values = _to_columns(fields)
        values["updated_at"] = datetime.now(timezone.utc)
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(users).where(users.c.id == user_id).values(**values)
            )
            return result.rowcount > 0

    def add_minutes_used(self, user_id: str, minutes: int) -> bool:
        """
        Atomically add consumed minutes if the result stays within the limit.

        Returns:
            False when the user has no limit or the addition would exceed it.
        """
        used = func.coalesce(users.c.minutes_used_this_period, 0)
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(users)
                .where(
                    users.c.id == user_id,
                    users.c.monthly_minutes_limit.is_not(None),
                    used + minutes <= users.c.monthly_minutes_limit,
                )
                .values(minutes_used_this_period=used + minutes, updated_at=datetime.now(timezone.utc))
            )
            return result.rowcount > 0
