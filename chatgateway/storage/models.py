from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

DEFAULT_CONVERSATION_TITLE = "New Chat"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    tier: str = "free"
    monthly_tokens_used: int = 0
    daily_messages_sent: int = 0
    billing_period_start: date = field(default_factory=lambda: utcnow().date())
    last_daily_reset: Optional[date] = None
    last_monthly_reset: Optional[date] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Conversation:
    id: str
    account_id: str
    title: str = DEFAULT_CONVERSATION_TITLE
    model_history: List[str] = field(default_factory=list)
    # highest sequence number handed out so far
    sequence_counter: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    sequence_number: int
    model_used: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UsageRecord:
    account_id: str
    day: date
    tokens_used: int = 0
    messages_sent: int = 0
    models_used: Dict[str, int] = field(default_factory=dict)
    cost_incurred: float = 0.0
