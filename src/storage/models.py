from typing import Optional
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import JSON, String, Integer, Float, BigInteger, Index

class Base(DeclarativeBase):
    pass

class RuleRow(Base):
    __tablename__ = "rules"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_address: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)              # dca | rebalance | rotate
    targets: Mapped[list] = mapped_column(JSON, nullable=False, default=list)  # asset ids
    rotate_top_n: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_spend_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    max_slippage_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    trigger: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)      # raw payload, decoded on read
    cooldown_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False)            # active | paused
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)        # ms UTC

    __table_args__ = (
        Index("ix_rules_status", "status"),
        Index("ix_rules_owner", "owner_address"),
    )

class LogRow(Base):
    __tablename__ = "logs"
    seq: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)   # append order
    id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    owner_address: Mapped[str] = mapped_column(String(128), nullable=False)
    rule_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(16), nullable=False)            # success | simulated | failed | error
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)        # ms UTC

    __table_args__ = (
        # cooldown lookup: newest execute_rule row per rule
        Index("ix_logs_rule_action_ts", "rule_id", "action", "created_at"),
        Index("ix_logs_owner_ts", "owner_address", "created_at"),
    )
