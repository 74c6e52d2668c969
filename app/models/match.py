"""
Nearmatch: Match request model.

A request moves Pending -> Accepted | Rejected and never leaves a terminal
state.  ``user_low_id``/``user_high_id`` hold the unordered pair so the
partial unique index below allows at most one open (pending or accepted)
request per pair regardless of who proposed.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class MatchStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


OPEN_STATUSES = (MatchStatus.PENDING.value, MatchStatus.ACCEPTED.value)

_OPEN_PAIR_PREDICATE = text("status IN ('pending', 'accepted')")


class MatchRequest(Base):
    __tablename__ = "match_requests"
    __table_args__ = (
        CheckConstraint("requester_id <> recipient_id", name="ck_match_request_not_self"),
        CheckConstraint("user_low_id < user_high_id", name="ck_match_request_pair_order"),
        CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected')",
            name="ck_match_request_status",
        ),
        Index(
            "uq_match_request_open_pair",
            "user_low_id",
            "user_high_id",
            unique=True,
            postgresql_where=_OPEN_PAIR_PREDICATE,
            sqlite_where=_OPEN_PAIR_PREDICATE,
        ),
        Index("ix_match_request_recipient_status", "recipient_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    requester_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    user_low_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_high_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=MatchStatus.PENDING.value,
        comment="pending / accepted / rejected",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        nullable=False,
    )
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @staticmethod
    def pair_key(a: uuid.UUID, b: uuid.UUID) -> tuple[uuid.UUID, uuid.UUID]:
        """Normalise an unordered pair to ``(low, high)``."""
        return (a, b) if a < b else (b, a)

    @classmethod
    def propose(cls, requester_id: uuid.UUID, recipient_id: uuid.UUID) -> "MatchRequest":
        low, high = cls.pair_key(requester_id, recipient_id)
        return cls(
            requester_id=requester_id,
            recipient_id=recipient_id,
            user_low_id=low,
            user_high_id=high,
            status=MatchStatus.PENDING.value,
            responded_at=None,
        )

    def __repr__(self) -> str:
        return f"<MatchRequest {self.requester_id} -> {self.recipient_id} status={self.status!r}>"
