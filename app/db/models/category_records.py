"""
Category Event Records - one table per event category.

These tables belong to a job's target datastore, not to the main database,
so they hang off their own metadata and are bootstrapped per target with
``create_all(checkfirst=True)`` (see app.db.datastore).

Each table is keyed by the provider signature (plus the token mint where a
transaction can carry several rows). Columns listed in MUTABLE_FIELDS are
the only ones a redelivery may overwrite.
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, JSON, Numeric, UniqueConstraint, Index
from sqlalchemy.orm import declarative_base

CategoryBase = declarative_base()


def _amount():
    return Numeric(38, 12, asdecimal=False)


class NftBid(CategoryBase):
    __tablename__ = "nft_bids"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signature = Column(String(100), nullable=False)
    mint_address = Column(String(64), nullable=False, index=True)
    bidder_address = Column(String(64), nullable=True)
    bid_amount = Column(_amount(), nullable=False, default=0)
    marketplace = Column(String(50), nullable=False, default="Unknown")
    currency = Column(String(20), nullable=False, default="SOL")
    status = Column(String(20), nullable=False)
    expires_at = Column(DateTime, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    raw_data = Column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("signature", name="uq_nft_bids_signature"),
        Index("ix_nft_bids_mint_status", "mint_address", "status"),
    )


class NftPrice(CategoryBase):
    __tablename__ = "nft_prices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signature = Column(String(100), nullable=False)
    mint_address = Column(String(64), nullable=False, index=True)
    price = Column(_amount(), nullable=False, default=0)
    marketplace = Column(String(50), nullable=False, default="Unknown")
    seller_address = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    raw_data = Column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("signature", name="uq_nft_prices_signature"),
    )


class TokenPrice(CategoryBase):
    __tablename__ = "token_prices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signature = Column(String(100), nullable=False)
    token_mint = Column(String(64), nullable=False, index=True)
    token_name = Column(String(100), nullable=True)
    price_usd = Column(_amount(), nullable=False)
    volume_24h = Column(_amount(), nullable=True)
    market_cap = Column(_amount(), nullable=True)
    platform = Column(String(50), nullable=False, default="Unknown")
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    raw_data = Column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("signature", "token_mint", name="uq_token_prices_signature_mint"),
    )


class LendingRate(CategoryBase):
    __tablename__ = "lending_rates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signature = Column(String(100), nullable=False)
    token_mint = Column(String(64), nullable=False, index=True)
    token_name = Column(String(100), nullable=True)
    protocol = Column(String(50), nullable=False)
    supply_rate = Column(_amount(), nullable=False)
    borrow_rate = Column(_amount(), nullable=False)
    total_supply = Column(_amount(), nullable=False)
    total_borrow = Column(_amount(), nullable=False)
    utilization = Column(_amount(), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    raw_data = Column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("signature", "token_mint", name="uq_lending_rates_signature_mint"),
    )


class IndexerState(CategoryBase):
    """Key/value progress markers kept next to the data they describe"""

    __tablename__ = "indexer_state"

    key = Column(String(100), primary_key=True)
    value = Column(String(500), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
