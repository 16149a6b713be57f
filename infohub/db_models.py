"""
Database models for InfoHub.

Timestamps are stored as epoch milliseconds.
"""

from sqlalchemy import Column, String, Integer, BigInteger, Float, JSON, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ApiCache(Base):
    """
    Durable (L2) cache of upstream responses.

    Rows past `expires_at` are treated as misses and removed by the prune pass.
    """
    __tablename__ = "api_cache"

    key = Column(String, primary_key=True)
    data = Column(JSON, nullable=False)
    expires_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class FundingSnapshot(Base):
    """Point-in-time funding rate (percent, 8h basis) for one symbol on one exchange."""
    __tablename__ = "funding_snapshots"
    __table_args__ = (Index("idx_funding_sym_ts", "symbol", "ts"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    exchange = Column(String, nullable=False)
    rate = Column(Float, nullable=False)
    predicted = Column(Float, nullable=True)
    ts = Column(BigInteger, nullable=False, index=True)


class OISnapshot(Base):
    """Point-in-time open interest in USD for one symbol on one exchange."""
    __tablename__ = "oi_snapshots"
    __table_args__ = (Index("idx_oi_sym_ts", "symbol", "ts"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    exchange = Column(String, nullable=False)
    oi_usd = Column(Float, nullable=False)
    ts = Column(BigInteger, nullable=False, index=True)


class Watchlist(Base):
    __tablename__ = "watchlists"
    __table_args__ = (UniqueConstraint("user_id", "symbol"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    added_at = Column(BigInteger, nullable=True)


class UserPrefs(Base):
    __tablename__ = "user_prefs"

    user_id = Column(String, primary_key=True)
    prefs = Column(JSON, nullable=False, default=dict)
    updated_at = Column(BigInteger, nullable=True)
