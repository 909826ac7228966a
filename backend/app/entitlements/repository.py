"""PostgreSQL persistence for coach profiles, subscriptions and admin grants."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .exceptions import StoreError
from .models import AdminOverride, CoachProfile, LocalSubscriptionRecord, SubscriptionStatus, TierKey


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None) -> Iterator[Tuple[PgConnection, bool]]:
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_profile(row: dict) -> CoachProfile:
    return CoachProfile(
        account_id=str(row["id"]),
        user_id=str(row["user_id"]),
        tier=TierKey(row.get("subscription_tier") or TierKey.FREE.value),
    )


def _row_to_subscription(row: dict) -> LocalSubscriptionRecord:
    return LocalSubscriptionRecord(
        tier=TierKey(row["tier"]),
        status=SubscriptionStatus(row["status"]),
        current_period_end=row.get("current_period_end"),
    )


def _row_to_override(row: dict) -> AdminOverride:
    return AdminOverride(
        tier=TierKey(row["tier"]),
        is_active=bool(row["is_active"]),
        expires_at=row.get("expires_at"),
    )


class _PostgresRepository:
    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self, operation: str) -> Iterator[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                    if managed:
                        connection.commit()
                except Exception:
                    if managed:
                        connection.rollback()
                    raise
                finally:
                    cursor.close()
        except psycopg2.Error as exc:
            raise StoreError(f"Database error during {operation}", operation=operation) from exc


class PostgresProfileStore(_PostgresRepository):
    """Reads coach profiles and updates their tier of record."""

    def get_profile(self, subscriber_id: str) -> Optional[CoachProfile]:
        with self._cursor("get_profile") as cursor:
            cursor.execute(
                """
                SELECT id, user_id, subscription_tier
                FROM coach_profiles
                WHERE user_id = %s
                LIMIT 1
                """,
                (subscriber_id,),
            )
            row = cursor.fetchone()
            return _row_to_profile(row) if row else None

    def update_tier(self, account_id: str, tier: TierKey) -> None:
        with self._cursor("update_tier") as cursor:
            cursor.execute(
                """
                UPDATE coach_profiles
                SET subscription_tier = %s
                WHERE id = %s AND subscription_tier IS DISTINCT FROM %s
                """,
                (tier.value, account_id, tier.value),
            )


class PostgresSubscriptionStore(_PostgresRepository):
    """Upserts the per-account subscription record keyed by ``coach_id``."""

    def read(self, account_id: str) -> Optional[LocalSubscriptionRecord]:
        with self._cursor("read_subscription") as cursor:
            cursor.execute(
                """
                SELECT tier, status, current_period_end
                FROM platform_subscriptions
                WHERE coach_id = %s
                LIMIT 1
                """,
                (account_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def write(self, account_id: str, record: LocalSubscriptionRecord) -> None:
        # Rows already holding the target values are left untouched so that
        # concurrent runs computing the same target converge.
        with self._cursor("write_subscription") as cursor:
            cursor.execute(
                """
                INSERT INTO platform_subscriptions (
                    coach_id,
                    tier,
                    status,
                    current_period_end
                )
                VALUES (%(coach_id)s, %(tier)s, %(status)s, %(current_period_end)s)
                ON CONFLICT (coach_id) DO UPDATE SET
                    tier = EXCLUDED.tier,
                    status = EXCLUDED.status,
                    current_period_end = EXCLUDED.current_period_end,
                    updated_at = NOW()
                WHERE (platform_subscriptions.tier,
                       platform_subscriptions.status,
                       platform_subscriptions.current_period_end)
                    IS DISTINCT FROM
                      (EXCLUDED.tier, EXCLUDED.status, EXCLUDED.current_period_end)
                """,
                {
                    "coach_id": account_id,
                    "tier": record.tier.value,
                    "status": record.status.value,
                    "current_period_end": record.current_period_end,
                },
            )


class PostgresOverrideStore(_PostgresRepository):
    """Read-only accessor for admin-granted subscriptions."""

    def read(self, account_id: str) -> Optional[AdminOverride]:
        with self._cursor("read_override") as cursor:
            cursor.execute(
                """
                SELECT tier, is_active, expires_at
                FROM admin_granted_subscriptions
                WHERE coach_id = %s AND is_active = TRUE
                ORDER BY expires_at DESC NULLS FIRST
                LIMIT 1
                """,
                (account_id,),
            )
            row = cursor.fetchone()
            return _row_to_override(row) if row else None


__all__ = [
    "PostgresOverrideStore",
    "PostgresProfileStore",
    "PostgresSubscriptionStore",
    "managed_connection",
]
