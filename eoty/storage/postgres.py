from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from eoty.logging import get_logger
from eoty.storage.common import (
    alert_from_row,
    chapter_from_row,
    encode_bag,
    event_from_row,
    event_to_row,
    generate_uuid,
    normalize_email,
    otp_from_row,
    reset_token_from_row,
    user_from_row,
    verification_token_from_row,
)
from eoty.storage.errors import CapabilityMissing, ConstraintViolation
from eoty.storage.models import (
    EXTENDED_PROFILE_KEYS,
    ActivityEvent,
    ActivityKind,
    ActivityQuery,
    AnomalyAlert,
    Capability,
    Chapter,
    EmailVerificationToken,
    FederatedIdentityLink,
    OtpCode,
    PasswordResetToken,
    Permission,
    User,
    utcnow,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_REQUIRED_TABLES = [
    "users",
    "chapters",
    "user_sso_accounts",
    "password_reset_tokens",
    "email_verification_tokens",
]

_PROFILE_COLUMNS = ("first_name", "last_name", "bio", "phone", "location", "profile_picture")

# capability -> (tables, (table, column) pairs) that must all exist
_CAPABILITY_REQUIREMENTS: Dict[Capability, tuple] = {
    Capability.LOCKOUT_COLUMNS: (
        [],
        [("users", "failed_login_attempts"), ("users", "account_locked_until")],
    ),
    Capability.TWO_FACTOR: (["two_factor_codes"], [("users", "is_2fa_enabled")]),
    Capability.ACTIVITY_LOG: (["activity_logs"], []),
    Capability.EXTENDED_PROFILE: ([], [("users", "profile_extras")]),
    Capability.PERMISSION_CATALOG: (["user_permissions", "role_permissions"], []),
    Capability.ANOMALY_ALERTS: (["abnormal_activity_alerts"], []),
}


class PostgresStore:
    """Postgres-backed credential, token and activity store."""

    def __init__(self, dsn: str, *, verify_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _optional(self, capability: Capability) -> Iterator[None]:
        """Translate a missing table/column into :class:`CapabilityMissing`."""
        try:
            yield
        except (errors.UndefinedTable, errors.UndefinedColumn) as exc:
            raise CapabilityMissing(capability.value) from exc

    def _verify_required_schema(self) -> None:
        """Ensure the core tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/migrate.py to install the schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def apply_schema(self, sql: Optional[str] = None) -> None:
        ddl = sql if sql is not None else SCHEMA_PATH.read_text()
        with self._connect() as conn:
            conn.execute(ddl)

    def store_kind(self) -> str:
        return "postgres"

    def close(self) -> None:
        self.pool.close()

    # -- capabilities -------------------------------------------------------

    def probe_capabilities(self) -> Set[str]:
        present: Set[str] = set()
        with self._connect() as conn:
            tables = {
                row["table_name"]
                for row in conn.execute(
                    "SELECT table_name FROM information_schema.tables WHERE table_schema = 'public'"
                ).fetchall()
            }
            columns = {
                (row["table_name"], row["column_name"])
                for row in conn.execute(
                    "SELECT table_name, column_name FROM information_schema.columns WHERE table_schema = 'public'"
                ).fetchall()
            }
        for capability, (needed_tables, needed_columns) in _CAPABILITY_REQUIREMENTS.items():
            if all(t in tables for t in needed_tables) and all(
                c in columns for c in needed_columns
            ):
                present.add(capability.value)
        return present

    # -- chapters -----------------------------------------------------------

    def create_chapter(
        self, name: str, location: Optional[str] = None, *, is_active: bool = True
    ) -> Chapter:
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO chapters (name, location, is_active) VALUES (%s, %s, %s) RETURNING *",
                (name, location, is_active),
            ).fetchone()
        return chapter_from_row(row)

    def get_chapter(self, chapter_id: int) -> Optional[Chapter]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chapters WHERE id = %s", (int(chapter_id),)
            ).fetchone()
        return chapter_from_row(row) if row else None

    def default_chapter(self) -> Optional[Chapter]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chapters WHERE is_active = TRUE ORDER BY id LIMIT 1"
            ).fetchone()
        return chapter_from_row(row) if row else None

    # -- users --------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
        chapter_id: Optional[int] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        is_active: bool = True,
        profile_picture: Optional[str] = None,
    ) -> User:
        user_id = generate_uuid()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, first_name, last_name, role, chapter_id,
                                       password_hash, password_algo, is_active, profile_picture)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        first_name,
                        last_name,
                        role,
                        chapter_id,
                        password_hash,
                        password_algo,
                        is_active,
                        profile_picture,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE lower(email) = %s", (normalize_email(email),)
            ).fetchone()
        return user_from_row(row) if row else None

    def get_user_by_provider(self, provider: str, provider_user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.* FROM user_sso_accounts s JOIN users u ON u.id = s.user_id
                WHERE s.provider_id = %s AND s.provider_user_id = %s
                """,
                (provider, provider_user_id),
            ).fetchone()
        return user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [user_from_row(row) for row in rows]

    def _update_user(self, user_id: str, assignments: Dict[str, Any]) -> Optional[User]:
        # column names come from fixed allow-lists, values are bound
        sets = ", ".join(f"{column} = %s" for column in assignments)
        params = list(assignments.values()) + [user_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET {sets}, updated_at = now() WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, {"role": role})

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        return self._update_user(user_id, {"is_active": active})

    def set_two_factor_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        with self._optional(Capability.TWO_FACTOR):
            return self._update_user(user_id, {"is_2fa_enabled": enabled})

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> Optional[User]:
        return self._update_user(
            user_id, {"password_hash": password_hash, "password_algo": password_algo}
        )

    def update_profile(
        self,
        user_id: str,
        fields: Optional[Dict[str, Any]] = None,
        extras: Optional[Dict[str, Any]] = None,
    ) -> Optional[User]:
        fields = dict(fields or {})
        unknown = set(fields) - set(_PROFILE_COLUMNS)
        if unknown:
            raise ValueError(f"unknown profile columns: {sorted(unknown)}")
        if extras:
            bad = set(extras) - set(EXTENDED_PROFILE_KEYS)
            if bad:
                raise ValueError(f"unknown profile extras: {sorted(bad)}")
        sets = [f"{column} = %s" for column in fields]
        params: List[Any] = list(fields.values())
        if extras:
            sets.append("profile_extras = COALESCE(profile_extras, '{}'::jsonb) || %s::jsonb")
            params.append(encode_bag(extras))
        if not sets:
            return self.get_user(user_id)
        params.append(user_id)
        with self._optional(Capability.EXTENDED_PROFILE):
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE users SET {', '.join(sets)}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        return user_from_row(row) if row else None

    def touch_last_login(
        self, user_id: str, *, profile_picture: Optional[str] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET last_login_at = now(),
                    profile_picture = COALESCE(%s, profile_picture),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (profile_picture, user_id),
            ).fetchone()
        return user_from_row(row) if row else None

    def record_failed_login(self, user_id: str) -> int:
        with self._optional(Capability.LOCKOUT_COLUMNS):
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE users SET failed_login_attempts = failed_login_attempts + 1
                    WHERE id = %s RETURNING failed_login_attempts
                    """,
                    (user_id,),
                ).fetchone()
        return int(row["failed_login_attempts"]) if row else 0

    def lock_account(self, user_id: str, until: datetime) -> None:
        with self._optional(Capability.LOCKOUT_COLUMNS):
            with self._connect() as conn:
                conn.execute(
                    "UPDATE users SET account_locked_until = %s WHERE id = %s",
                    (until, user_id),
                )

    def reset_failed_logins(self, user_id: str) -> None:
        with self._optional(Capability.LOCKOUT_COLUMNS):
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE users SET failed_login_attempts = 0, account_locked_until = NULL
                    WHERE id = %s
                    """,
                    (user_id,),
                )

    # -- federated identity -------------------------------------------------

    def link_provider(self, user_id: str, provider: str, provider_user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_sso_accounts (user_id, provider_id, provider_user_id, last_used_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (provider_id, provider_user_id) DO UPDATE
                SET user_id = EXCLUDED.user_id, last_used_at = now()
                """,
                (user_id, provider, provider_user_id),
            )

    def touch_provider_link(self, provider: str, provider_user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_sso_accounts SET last_used_at = now()
                WHERE provider_id = %s AND provider_user_id = %s
                """,
                (provider, provider_user_id),
            )

    def list_provider_links(self, user_id: str) -> List[FederatedIdentityLink]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_sso_accounts WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            FederatedIdentityLink(
                user_id=str(row["user_id"]),
                provider=row["provider_id"],
                provider_user_id=row["provider_user_id"],
                created_at=row["created_at"],
                last_used_at=row.get("last_used_at"),
            )
            for row in rows
        ]

    # -- one-time codes and tokens ------------------------------------------

    def insert_otp(self, otp: OtpCode) -> OtpCode:
        with self._optional(Capability.TWO_FACTOR):
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO two_factor_codes (id, user_id, code_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (otp.id, otp.user_id, otp.code_hash, otp.expires_at, otp.created_at),
                )
        return otp

    def list_active_otps(self, user_id: str, now: Optional[datetime] = None) -> List[OtpCode]:
        with self._optional(Capability.TWO_FACTOR):
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM two_factor_codes
                    WHERE user_id = %s AND expires_at > %s
                    ORDER BY created_at DESC
                    """,
                    (user_id, now or utcnow()),
                ).fetchall()
        return [otp_from_row(row) for row in rows]

    def delete_otp(self, otp_id: str) -> bool:
        with self._optional(Capability.TWO_FACTOR):
            with self._connect() as conn:
                row = conn.execute(
                    "DELETE FROM two_factor_codes WHERE id = %s RETURNING id", (otp_id,)
                ).fetchone()
        return row is not None

    def insert_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_tokens (id, user_id, token_hash, expires_at, used, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.user_id,
                    token.token_hash,
                    token.expires_at,
                    token.used,
                    token.created_at,
                ),
            )
        return token

    def find_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return reset_token_from_row(row) if row else None

    def mark_reset_token_used(self, token_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_tokens SET used = TRUE
                WHERE id = %s AND used = FALSE
                RETURNING id
                """,
                (token_id,),
            ).fetchone()
        return row is not None

    def insert_verification_token(
        self, token: EmailVerificationToken
    ) -> EmailVerificationToken:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO email_verification_tokens
                    (id, user_id, email, token_hash, expires_at, used, verified, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.user_id,
                    token.email,
                    token.token_hash,
                    token.expires_at,
                    token.used,
                    token.verified,
                    token.created_at,
                ),
            )
        return token

    def find_verification_token(self, token_hash: str) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_verification_tokens WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return verification_token_from_row(row) if row else None

    def mark_verification_token_used(self, token_id: str, *, verified: bool) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_verification_tokens
                SET used = TRUE,
                    verified = verified OR %s,
                    verified_at = CASE WHEN %s THEN now() ELSE verified_at END
                WHERE id = %s AND used = FALSE
                RETURNING id
                """,
                (verified, verified, token_id),
            ).fetchone()
        return row is not None

    def has_verified_email(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS ok FROM email_verification_tokens WHERE user_id = %s AND verified = TRUE LIMIT 1",
                (user_id,),
            ).fetchone()
        return row is not None

    # -- activity log -------------------------------------------------------

    def insert_activity_event(self, event: ActivityEvent) -> ActivityEvent:
        row = event_to_row(event)
        with self._optional(Capability.ACTIVITY_LOG):
            with self._connect() as conn:
                stored = conn.execute(
                    """
                    INSERT INTO activity_logs (id, user_id, activity_type, ip_address, user_agent,
                                               device_type, browser, os, location, success,
                                               failure_reason, metadata, created_at)
                    VALUES (%(id)s, %(user_id)s, %(activity_type)s, %(ip_address)s, %(user_agent)s,
                            %(device_type)s, %(browser)s, %(os)s, %(location)s, %(success)s,
                            %(failure_reason)s, %(metadata)s::jsonb, %(created_at)s)
                    RETURNING *
                    """,
                    row,
                ).fetchone()
        return event_from_row(stored)

    def list_activity_events(
        self, user_id: str, query: Optional[ActivityQuery] = None
    ) -> List[ActivityEvent]:
        query = query or ActivityQuery()
        clauses = ["user_id = %s"]
        params: List[Any] = [user_id]
        if query.kind:
            clauses.append("activity_type = %s")
            params.append(query.kind)
        if query.since:
            clauses.append("created_at >= %s")
            params.append(query.since)
        if query.until:
            clauses.append("created_at <= %s")
            params.append(query.until)
        params.extend([query.limit, query.offset])
        with self._optional(Capability.ACTIVITY_LOG):
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT * FROM activity_logs WHERE {' AND '.join(clauses)}
                    ORDER BY created_at DESC LIMIT %s OFFSET %s
                    """,
                    params,
                ).fetchall()
        return [event_from_row(row) for row in rows]

    def count_recent_failures(
        self,
        *,
        since: datetime,
        ip_address: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        clauses = ["activity_type = %s", "success = FALSE", "created_at >= %s"]
        params: List[Any] = [ActivityKind.FAILED_LOGIN.value, since]
        if ip_address:
            clauses.append("ip_address = %s")
            params.append(ip_address)
        if user_id:
            clauses.append("user_id = %s")
            params.append(user_id)
        with self._optional(Capability.ACTIVITY_LOG):
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT count(*) AS n FROM activity_logs WHERE {' AND '.join(clauses)}",
                    params,
                ).fetchone()
        return int(row["n"]) if row else 0

    def distinct_login_origins(self, user_id: str, since: datetime) -> List[Optional[str]]:
        with self._optional(Capability.ACTIVITY_LOG):
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT DISTINCT ip_address FROM activity_logs
                    WHERE user_id = %s AND activity_type = %s AND success = TRUE AND created_at >= %s
                    """,
                    (user_id, ActivityKind.LOGIN.value, since),
                ).fetchall()
        return [row["ip_address"] for row in rows]

    def latest_login_from_other_origin(
        self, user_id: str, ip_address: str
    ) -> Optional[ActivityEvent]:
        with self._optional(Capability.ACTIVITY_LOG):
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM activity_logs
                    WHERE user_id = %s AND activity_type = %s AND success = TRUE
                      AND ip_address IS NOT NULL AND ip_address <> %s
                    ORDER BY created_at DESC LIMIT 1
                    """,
                    (user_id, ActivityKind.LOGIN.value, ip_address),
                ).fetchone()
        return event_from_row(row) if row else None

    # -- alerts -------------------------------------------------------------

    def find_open_alert(self, user_id: str, kind: str, since: datetime) -> Optional[AnomalyAlert]:
        with self._optional(Capability.ANOMALY_ALERTS):
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM abnormal_activity_alerts
                    WHERE user_id = %s AND alert_type = %s AND is_resolved = FALSE AND created_at >= %s
                    ORDER BY created_at DESC LIMIT 1
                    """,
                    (user_id, kind, since),
                ).fetchone()
        return alert_from_row(row) if row else None

    def insert_alert(self, alert: AnomalyAlert) -> AnomalyAlert:
        with self._optional(Capability.ANOMALY_ALERTS):
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO abnormal_activity_alerts
                        (id, user_id, alert_type, description, severity, activity_data,
                         is_resolved, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb, FALSE, %s, %s)
                    """,
                    (
                        alert.id,
                        alert.user_id,
                        alert.kind,
                        alert.description,
                        alert.severity,
                        encode_bag(alert.activity_data),
                        alert.created_at,
                        alert.updated_at,
                    ),
                )
        return alert

    def update_alert(
        self, alert_id: str, *, description: str, severity: str, activity_data: Dict
    ) -> Optional[AnomalyAlert]:
        with self._optional(Capability.ANOMALY_ALERTS):
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE abnormal_activity_alerts
                    SET description = %s, severity = %s, activity_data = %s::jsonb, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (description, severity, encode_bag(activity_data), alert_id),
                ).fetchone()
        return alert_from_row(row) if row else None

    def list_open_alerts(self, user_id: str) -> List[AnomalyAlert]:
        with self._optional(Capability.ANOMALY_ALERTS):
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM abnormal_activity_alerts
                    WHERE user_id = %s AND is_resolved = FALSE
                    ORDER BY created_at DESC
                    """,
                    (user_id,),
                ).fetchall()
        return [alert_from_row(row) for row in rows]

    def resolve_alert(self, alert_id: str, resolved_by: str) -> Optional[AnomalyAlert]:
        with self._optional(Capability.ANOMALY_ALERTS):
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE abnormal_activity_alerts
                    SET is_resolved = TRUE, resolved_at = now(), resolved_by = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (resolved_by, alert_id),
                ).fetchone()
        return alert_from_row(row) if row else None

    # -- permissions --------------------------------------------------------

    def seed_permissions(
        self, catalog: Iterable[Permission], role_map: Dict[str, List[str]]
    ) -> None:
        with self._optional(Capability.PERMISSION_CATALOG):
            with self._connect() as conn:
                for permission in catalog:
                    conn.execute(
                        """
                        INSERT INTO user_permissions (permission_key, description, category)
                        VALUES (%s, %s, %s)
                        ON CONFLICT (permission_key) DO UPDATE
                        SET description = EXCLUDED.description, category = EXCLUDED.category
                        """,
                        (permission.key, permission.description, permission.category),
                    )
                for role, keys in role_map.items():
                    for key in keys:
                        conn.execute(
                            """
                            INSERT INTO role_permissions (role, permission_id)
                            SELECT %s, id FROM user_permissions WHERE permission_key = %s
                            ON CONFLICT DO NOTHING
                            """,
                            (role, key),
                        )

    def all_permission_keys(self) -> List[str]:
        with self._optional(Capability.PERMISSION_CATALOG):
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT permission_key FROM user_permissions ORDER BY permission_key"
                ).fetchall()
        return [row["permission_key"] for row in rows]

    def role_permission_keys(self, role: str) -> List[str]:
        with self._optional(Capability.PERMISSION_CATALOG):
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT up.permission_key FROM role_permissions rp
                    JOIN user_permissions up ON up.id = rp.permission_id
                    WHERE rp.role = %s
                    ORDER BY up.permission_key
                    """,
                    (role,),
                ).fetchall()
        return [row["permission_key"] for row in rows]
