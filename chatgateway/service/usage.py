from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Callable, Optional

from chatgateway.logging import get_logger


class UsageAccountant:
    """Records consumption after a completed exchange.

    Both writes are atomic increments in the store. A failure is logged and
    reported as ``False``; it never reaches the client, whose response has
    already been delivered.
    """

    def __init__(
        self,
        store,
        *,
        cost_per_token: float = 0.001,
        clock: Optional[Callable[[], date]] = None,
    ) -> None:
        self.store = store
        self.cost_per_token = cost_per_token
        self.clock = clock or (lambda: datetime.now(timezone.utc).date())
        self.logger = get_logger(__name__)

    def record(self, account_id: str, *, tokens: int, messages: int, model_id: str) -> bool:
        tokens = max(0, int(tokens))
        messages = max(0, int(messages))
        try:
            self.store.increment_account_usage(account_id, tokens, messages)
            self.store.upsert_usage_record(
                account_id,
                self.clock(),
                tokens=tokens,
                messages=messages,
                model_id=model_id,
                cost=tokens * self.cost_per_token,
            )
        except Exception as exc:
            self.logger.warning(
                "usage_record_failed",
                account_id=account_id,
                model=model_id,
                tokens_used=tokens,
                error=str(exc),
            )
            return False
        return True
