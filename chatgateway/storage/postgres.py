from __future__ import annotations

import uuid
from datetime import date
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from chatgateway.logging import get_logger
from chatgateway.storage.errors import ConstraintViolation
from chatgateway.storage.models import (
    DEFAULT_CONVERSATION_TITLE,
    Account,
    Conversation,
    Message,
    UsageRecord,
    utcnow,
)


class PostgresStore:
    """Postgres-backed record store.

    Counter and sequence mutations are single statements (conditional
    ``UPDATE ... RETURNING`` or ``INSERT ... ON CONFLICT``) so concurrent
    requests never lose increments or double-apply a reset.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure gateway tables exist before serving requests."""

        required_tables = ["account", "conversation", "message", "usage_tracking"]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # accounts
    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            tier=row.get("tier") or "free",
            monthly_tokens_used=int(row.get("monthly_tokens_used") or 0),
            daily_messages_sent=int(row.get("daily_messages_sent") or 0),
            billing_period_start=row.get("billing_period_start")
            or utcnow().date(),
            last_daily_reset=row.get("last_daily_reset"),
            last_monthly_reset=row.get("last_monthly_reset"),
            created_at=row.get("created_at", utcnow()),
        )

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def ensure_account(
        self,
        account_id: str,
        *,
        tier: str = "free",
        billing_period_start: Optional[date] = None,
    ) -> Account:
        start = billing_period_start or utcnow().date()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO account (id, tier, billing_period_start)
                VALUES (%s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (account_id, tier, start),
            )
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row)

    def set_account_tier(
        self,
        account_id: str,
        tier: str,
        *,
        billing_period_start: Optional[date] = None,
    ) -> Account:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET tier = %s,
                    billing_period_start = COALESCE(%s, billing_period_start)
                WHERE id = %s
                RETURNING *
                """,
                (tier, billing_period_start, account_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return self._account_from_row(row)

    def apply_daily_reset(self, account_id: str, today: date) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET daily_messages_sent = 0, last_daily_reset = %s
                WHERE id = %s AND (last_daily_reset IS NULL OR last_daily_reset < %s)
                RETURNING id
                """,
                (today, account_id, today),
            ).fetchone()
        return row is not None

    def apply_monthly_reset(
        self, account_id: str, anniversary: date, today: date
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET monthly_tokens_used = 0, last_monthly_reset = %s
                WHERE id = %s AND (last_monthly_reset IS NULL OR last_monthly_reset < %s)
                RETURNING id
                """,
                (today, account_id, anniversary),
            ).fetchone()
        return row is not None

    def increment_account_usage(
        self, account_id: str, tokens: int, messages: int
    ) -> None:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET monthly_tokens_used = GREATEST(0, monthly_tokens_used + %s),
                    daily_messages_sent = GREATEST(0, daily_messages_sent + %s)
                WHERE id = %s
                RETURNING id
                """,
                (tokens, messages, account_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("account not found", {"account_id": account_id})

    # usage tracking
    @staticmethod
    def _usage_from_row(row: dict) -> UsageRecord:
        return UsageRecord(
            account_id=str(row["account_id"]),
            day=row["date"],
            tokens_used=int(row.get("tokens_used") or 0),
            messages_sent=int(row.get("messages_sent") or 0),
            models_used=dict(row.get("models_used") or {}),
            cost_incurred=float(row.get("cost_incurred") or 0),
        )

    def upsert_usage_record(
        self,
        account_id: str,
        day: date,
        *,
        tokens: int,
        messages: int,
        model_id: str,
        cost: float,
    ) -> UsageRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO usage_tracking
                        (account_id, date, tokens_used, messages_sent, models_used, cost_incurred)
                    VALUES (%s, %s, %s, %s, jsonb_build_object(%s::text, 1), %s)
                    ON CONFLICT (account_id, date) DO UPDATE SET
                        tokens_used = usage_tracking.tokens_used + EXCLUDED.tokens_used,
                        messages_sent = usage_tracking.messages_sent + EXCLUDED.messages_sent,
                        models_used = usage_tracking.models_used || jsonb_build_object(
                            %s::text,
                            COALESCE((usage_tracking.models_used ->> %s)::int, 0) + 1
                        ),
                        cost_incurred = usage_tracking.cost_incurred + EXCLUDED.cost_incurred
                    RETURNING *
                    """,
                    (
                        account_id,
                        day,
                        tokens,
                        messages,
                        model_id,
                        cost,
                        model_id,
                        model_id,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return self._usage_from_row(row)

    def get_usage_record(self, account_id: str, day: date) -> Optional[UsageRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM usage_tracking WHERE account_id = %s AND date = %s",
                (account_id, day),
            ).fetchone()
        return self._usage_from_row(row) if row else None

    # conversations
    @staticmethod
    def _conversation_from_row(row: dict) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            title=row.get("title") or DEFAULT_CONVERSATION_TITLE,
            model_history=list(row.get("model_history") or []),
            sequence_counter=int(row.get("sequence_counter") or 0),
            created_at=row.get("created_at", utcnow()),
            updated_at=row.get("updated_at", utcnow()),
        )

    def create_conversation_if_absent(
        self, conversation_id: str, account_id: str
    ) -> Conversation:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO conversation (id, account_id, title)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    (conversation_id, account_id, DEFAULT_CONVERSATION_TITLE),
                )
                row = conn.execute(
                    "SELECT * FROM conversation WHERE id = %s", (conversation_id,)
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "conversation owner missing", {"account_id": account_id}
            )
        return self._conversation_from_row(row)

    def get_conversation(
        self, conversation_id: str, *, account_id: Optional[str] = None
    ) -> Optional[Conversation]:
        params: tuple[Any, ...] = (conversation_id,)
        query = "SELECT * FROM conversation WHERE id = %s"
        if account_id:
            query += " AND account_id = %s"
            params = (conversation_id, account_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._conversation_from_row(row) if row else None

    def list_conversations(self, account_id: str, limit: int = 50) -> List[Conversation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversation
                WHERE account_id = %s
                ORDER BY updated_at DESC
                LIMIT %s
                """,
                (account_id, limit),
            ).fetchall()
        return [self._conversation_from_row(row) for row in rows]

    def reserve_sequences(self, conversation_id: str, count: int = 2) -> int:
        """Atomically bump the conversation's counter and return the first number.

        The row lock taken by ``UPDATE`` serializes concurrent exchanges on the
        same conversation; ``GREATEST`` keeps the counter ahead of any rows
        written before the counter column existed.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE conversation
                SET sequence_counter = GREATEST(
                        sequence_counter,
                        COALESCE(
                            (SELECT MAX(sequence_number) FROM message WHERE conversation_id = %s),
                            0
                        )
                    ) + %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING sequence_counter
                """,
                (conversation_id, count, conversation_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "conversation not found", {"conversation_id": conversation_id}
            )
        return int(row["sequence_counter"]) - count + 1

    def max_sequence(self, conversation_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(sequence_number), 0) AS max_seq FROM message WHERE conversation_id = %s",
                (conversation_id,),
            ).fetchone()
        return int(row["max_seq"]) if row else 0

    def update_title_if_default(self, conversation_id: str, title: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE conversation SET title = %s, updated_at = now()
                WHERE id = %s AND title = %s
                RETURNING id
                """,
                (title, conversation_id, DEFAULT_CONVERSATION_TITLE),
            ).fetchone()
        return row is not None

    def append_model_history(self, conversation_id: str, model_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE conversation
                SET model_history = model_history || jsonb_build_array(%s::text),
                    updated_at = now()
                WHERE id = %s AND NOT (model_history ? %s)
                RETURNING id
                """,
                (model_id, conversation_id, model_id),
            ).fetchone()
        return row is not None

    def rename_conversation(
        self, conversation_id: str, account_id: str, title: str
    ) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE conversation SET title = %s, updated_at = now()
                WHERE id = %s AND account_id = %s
                RETURNING *
                """,
                (title, conversation_id, account_id),
            ).fetchone()
        return self._conversation_from_row(row) if row else None

    def delete_conversation(self, conversation_id: str, account_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM conversation WHERE id = %s AND account_id = %s RETURNING id",
                (conversation_id, account_id),
            ).fetchone()
        return row is not None

    def delete_conversations(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM conversation WHERE account_id = %s", (account_id,)
            )
            deleted = cur.rowcount
        return max(deleted or 0, 0)

    # messages
    @staticmethod
    def _message_from_row(row: dict) -> Message:
        return Message(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=row["role"],
            content=row["content"],
            sequence_number=int(row["sequence_number"]),
            model_used=row.get("model_used"),
            input_tokens=int(row.get("input_tokens") or 0),
            output_tokens=int(row.get("output_tokens") or 0),
            total_tokens=int(row.get("total_tokens") or 0),
            created_at=row.get("created_at", utcnow()),
        )

    def insert_message(self, message: Message) -> Message:
        msg_id = message.id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        INSERT INTO message
                            (id, conversation_id, role, content, model_used,
                             input_tokens, output_tokens, sequence_number, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            msg_id,
                            message.conversation_id,
                            message.role,
                            message.content,
                            message.model_used,
                            message.input_tokens,
                            message.output_tokens,
                            message.sequence_number,
                            message.created_at,
                        ),
                    ).fetchone()
                    conn.execute(
                        "UPDATE conversation SET updated_at = %s WHERE id = %s",
                        (message.created_at, message.conversation_id),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "duplicate sequence number",
                {
                    "conversation_id": message.conversation_id,
                    "sequence_number": message.sequence_number,
                },
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "conversation not found", {"conversation_id": message.conversation_id}
            )
        return self._message_from_row(row)

    def list_messages(self, conversation_id: str) -> List[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM message WHERE conversation_id = %s ORDER BY sequence_number ASC",
                (conversation_id,),
            ).fetchall()
        return [self._message_from_row(row) for row in rows]
