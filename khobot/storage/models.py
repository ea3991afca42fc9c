"""
Data models for khobot storage.
Conversation-side records are written by SQLiteStore; catalog records are
read-only views of the back office's inventory data.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp, so string comparison matches time order."""
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def new_id() -> str:
    return uuid4().hex


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@dataclass
class Message:
    """A single turn in a conversation."""
    role: str = ""           # "user" or "assistant"
    content: str = ""
    created_at: str = field(default_factory=lambda: to_iso(utcnow()))

    def to_openai_format(self) -> dict:
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content, "createdAt": self.created_at}


@dataclass
class SelectionOption:
    """One candidate offered to the user after an ambiguous name lookup."""
    index: int
    code: str = ""
    name: str = ""


@dataclass
class PendingSelection:
    """Candidates waiting for the user to pick one, plus what they were for."""
    domain: str
    question: str
    options: list[SelectionOption] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PendingSelection":
        return cls(
            domain=data.get("domain", ""),
            question=data.get("question", ""),
            options=[SelectionOption(**o) for o in data.get("options", [])],
        )


@dataclass
class Conversation:
    """Conversation header. Messages are loaded separately."""
    conversation_id: str
    user_id: str
    title: str = ""
    created_at: str = ""
    updated_at: str = ""
    expire_at: str = ""
    pending_selection: PendingSelection | None = None
    messages: list[Message] = field(default_factory=list)


@dataclass
class Feedback:
    """User feedback about an answer. Append-only."""
    user_id: str
    conversation_id: str
    description: str
    expected: str | None = None
    actual: str | None = None
    rating: int | None = None
    feedback_id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=lambda: to_iso(utcnow()))

    def to_dict(self) -> dict:
        return {
            "feedbackId": self.feedback_id,
            "conversationId": self.conversation_id,
            "description": self.description,
            "expected": self.expected,
            "actual": self.actual,
            "rating": self.rating,
            "createdAt": self.created_at,
        }


# ---------------------------------------------------------------------------
# Catalog (read-only business data)
# ---------------------------------------------------------------------------

@dataclass
class StockQuantity:
    """A quantity split into the counted part and the physically verified part."""
    quantity: float = 0
    real: float = 0

    def to_dict(self) -> dict:
        return {"quantity": self.quantity, "real": self.real}


@dataclass
class InventoryItem:
    id: str
    code: str
    name: str
    quantity_per_box: float = 0
    received: StockQuantity = field(default_factory=StockQuantity)
    delivered: StockQuantity = field(default_factory=StockQuantity)
    rest: StockQuantity = field(default_factory=StockQuantity)
    deleted_at: str | None = None


@dataclass
class StockLine:
    """A reference to an inventory item with a quantity."""
    item_id: str
    quantity: float = 0


@dataclass
class Composition:
    """A product (or combo) and the inventory items it is made of."""
    id: str
    name: str
    items: list[StockLine] = field(default_factory=list)
    deleted_at: str | None = None


@dataclass
class MovementEntry:
    """
    One stock movement log entry.
    Older entries carry a single `item`; newer ones a list of `items`.
    """
    id: str
    status: str
    date: str
    note: str = ""
    tag: str = ""
    item: StockLine | None = None
    items: list[StockLine] = field(default_factory=list)

    def lines(self) -> list[StockLine]:
        return ([self.item] if self.item else []) + list(self.items)
