"""
Category Upserters

One upserter per EventCategory: ``transform`` turns an envelope into rows,
``upsert`` writes them with ``INSERT ... ON CONFLICT (key) DO UPDATE`` that
touches mutable columns only. Identity columns keep the values of the first
delivery; mutable columns follow the last applied delivery.

Transactions are owned by the caller so all upserts of one delivery commit
or roll back together.
"""
from __future__ import annotations

import math
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import MalformedEventError, ValidationException
from app.core.logging import get_logger
from app.db.models.category_records import IndexerState, LendingRate, NftBid, NftPrice, TokenPrice
from app.domain.classifier import (
    DEX_PROGRAMS,
    LENDING_PROGRAMS,
    NFT_MARKETPLACE_PROGRAMS,
    EventCategory,
    program_name,
)
from app.domain.events import EventEnvelope, parse_timestamp

logger = get_logger(__name__)

_MINT_RE = re.compile(r"^[A-Za-z0-9]{32,44}$")

BID_STATUSES = {
    "BID_PLACED": "active",
    "NFT_BID": "active",
    "BID_CANCELLED": "cancelled",
    "NFT_BID_CANCELLED": "cancelled",
    "BID_ACCEPTED": "accepted",
    "NFT_BID_ACCEPTED": "accepted",
}

PRICE_STATUSES = {
    "NFT_LISTING": "listed",
    "NFT_SALE": "sold",
    "NFT_LISTING_CANCELLED": "cancelled",
    "NFT_CANCEL_LISTING": "cancelled",
}


def bid_status(event_type: str) -> str:
    return BID_STATUSES.get(event_type, "expired")


def price_status(event_type: str) -> str:
    return PRICE_STATUSES.get(event_type, "listed")


def _number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _nft_mint(envelope: EventEnvelope) -> str | None:
    nft = envelope.nft_event
    nfts = nft.get("nfts") or []
    first_nft = nfts[0] if nfts and isinstance(nfts[0], dict) else {}
    return _first(nft.get("mint"), first_nft.get("mint"), envelope.payload.get("mint"))


def _marketplace(envelope: EventEnvelope) -> str:
    return program_name(
        envelope,
        NFT_MARKETPLACE_PROGRAMS,
        default=envelope.nft_event.get("source") or envelope.payload.get("source") or "Unknown",
    )


# ---------------------------------------------------------------------------
# transforms
# ---------------------------------------------------------------------------


def transform_nft_bid(envelope: EventEnvelope) -> list[dict[str, Any]]:
    nft = envelope.nft_event
    payload = envelope.payload
    mint = _nft_mint(envelope)
    if not mint:
        return []

    expires_raw = _first(payload.get("expiresAt"), nft.get("expiresAt"), nft.get("expiry"))
    try:
        expires_at = parse_timestamp(expires_raw) if expires_raw is not None else None
    except MalformedEventError:
        expires_at = None

    return [{
        "signature": envelope.signature,
        "mint_address": mint,
        "bidder_address": _first(
            nft.get("bidder"), nft.get("buyer"), payload.get("bidder"),
            payload.get("sourceAddress"), payload.get("feePayer"),
        ),
        "bid_amount": _number(_first(nft.get("amount"), payload.get("amount"), payload.get("bidAmount"))) or 0.0,
        "marketplace": _marketplace(envelope),
        "currency": payload.get("currency") or "SOL",
        "status": bid_status(envelope.type),
        "expires_at": expires_at,
        "timestamp": envelope.timestamp,
        "raw_data": payload,
    }]


def transform_nft_price(envelope: EventEnvelope) -> list[dict[str, Any]]:
    nft = envelope.nft_event
    payload = envelope.payload
    mint = _nft_mint(envelope)
    if not mint:
        return []

    return [{
        "signature": envelope.signature,
        "mint_address": mint,
        "price": _number(_first(nft.get("amount"), payload.get("amount"), payload.get("price"))) or 0.0,
        "marketplace": _marketplace(envelope),
        "seller_address": _first(nft.get("seller"), payload.get("seller")),
        "status": price_status(envelope.type),
        "timestamp": envelope.timestamp,
        "raw_data": payload,
    }]


def _transfer_amount(transfer: dict[str, Any]) -> float | None:
    return _number(_first(transfer.get("amount"), transfer.get("tokenAmount")))


def transform_token_price(envelope: EventEnvelope) -> list[dict[str, Any]]:
    payload = envelope.payload
    transfers = [
        t for t in (payload.get("tokenTransfers") or [])
        if isinstance(t, dict) and t.get("decimals") is not None
    ]
    if len(transfers) < 2:
        return []

    token_in, token_out = transfers[0], transfers[1]
    in_amount = _transfer_amount(token_in)
    out_amount = _transfer_amount(token_out)
    in_decimals = _number(token_in.get("decimals"))
    out_decimals = _number(token_out.get("decimals"))
    mint = token_in.get("mint")
    if not mint or None in (in_amount, out_amount, in_decimals, out_decimals) or in_amount == 0:
        return []

    try:
        numerator = out_amount * 10 ** -out_decimals
        denominator = in_amount * 10 ** -in_decimals
    except OverflowError:
        return []
    if denominator == 0 or not math.isfinite(numerator) or not math.isfinite(denominator):
        return []
    price = numerator / denominator
    if not math.isfinite(price):
        return []
    return [{
        "signature": envelope.signature,
        "token_mint": mint,
        "token_name": _first(token_in.get("symbol"), token_in.get("tokenName")),
        "price_usd": price,
        "volume_24h": _number(payload.get("volume24h")),
        "market_cap": _number(payload.get("marketCap")),
        "platform": program_name(envelope, DEX_PROGRAMS, default=payload.get("source") or "Unknown"),
        "timestamp": envelope.timestamp,
        "raw_data": payload,
    }]


def transform_lending_rate(envelope: EventEnvelope) -> list[dict[str, Any]]:
    rows = []
    for entry in envelope.payload.get("accountData") or []:
        if not isinstance(entry, dict):
            continue
        protocol = LENDING_PROGRAMS.get(entry.get("program"))
        data = entry.get("data")
        if protocol is None or not isinstance(data, dict) or not data.get("tokenMint"):
            continue

        total_supply = _number(data.get("totalSupply"))
        total_borrow = _number(data.get("totalBorrow"))
        if total_supply is None or total_borrow is None:
            continue

        rows.append({
            "signature": envelope.signature,
            "token_mint": data["tokenMint"],
            "token_name": _first(data.get("tokenName"), data.get("symbol")),
            "protocol": protocol,
            "supply_rate": (_number(data.get("supplyRate")) or 0.0) / 100,
            "borrow_rate": (_number(data.get("borrowRate")) or 0.0) / 100,
            "total_supply": total_supply,
            "total_borrow": total_borrow,
            "utilization": total_borrow / total_supply if total_supply else 0.0,
            "timestamp": envelope.timestamp,
            "raw_data": envelope.payload,
        })
    return rows


# ---------------------------------------------------------------------------
# upsert
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CategoryUpserter:
    category: EventCategory
    model: type
    conflict_columns: tuple[str, ...]
    mutable_columns: tuple[str, ...]
    transform: Callable[[EventEnvelope], list[dict[str, Any]]]

    async def upsert(self, session: AsyncSession, rows: Iterable[dict[str, Any]]) -> int:
        """Write rows; on key conflict only mutable columns change"""
        insert = _dialect_insert(session)
        written = 0
        for row in rows:
            stmt = insert(self.model.__table__).values(**row)
            stmt = stmt.on_conflict_do_update(
                index_elements=list(self.conflict_columns),
                set_={column: stmt.excluded[column] for column in self.mutable_columns},
            )
            await session.execute(stmt)
            written += 1
        return written


def _dialect_insert(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upserts are not supported on dialect '{dialect}'")


UPSERTERS: dict[EventCategory, CategoryUpserter] = {
    EventCategory.NFT_BID: CategoryUpserter(
        category=EventCategory.NFT_BID,
        model=NftBid,
        conflict_columns=("signature",),
        mutable_columns=("status", "bid_amount", "expires_at", "raw_data"),
        transform=transform_nft_bid,
    ),
    EventCategory.NFT_PRICE: CategoryUpserter(
        category=EventCategory.NFT_PRICE,
        model=NftPrice,
        conflict_columns=("signature",),
        mutable_columns=("status", "price", "raw_data"),
        transform=transform_nft_price,
    ),
    EventCategory.TOKEN_PRICE: CategoryUpserter(
        category=EventCategory.TOKEN_PRICE,
        model=TokenPrice,
        conflict_columns=("signature", "token_mint"),
        mutable_columns=("price_usd", "volume_24h", "market_cap", "raw_data"),
        transform=transform_token_price,
    ),
    EventCategory.LENDING_RATE: CategoryUpserter(
        category=EventCategory.LENDING_RATE,
        model=LendingRate,
        conflict_columns=("signature", "token_mint"),
        mutable_columns=(
            "supply_rate", "borrow_rate", "total_supply", "total_borrow", "utilization", "raw_data",
        ),
        transform=transform_lending_rate,
    ),
}


async def apply_envelope(
    session: AsyncSession,
    envelope: EventEnvelope,
    categories: Iterable[EventCategory],
) -> dict[EventCategory, int]:
    """Run every matched upserter for one event; returns rows written per category"""
    written: dict[EventCategory, int] = {}
    for category in categories:
        upserter = UPSERTERS[category]
        rows = upserter.transform(envelope)
        if not rows:
            logger.debug(
                "Event lacks data for category",
                extra_data={"signature": envelope.signature, "category": category.value},
            )
            continue
        written[category] = await upserter.upsert(session, rows)
    return written


# ---------------------------------------------------------------------------
# read side and indexer state
# ---------------------------------------------------------------------------


async def get_active_bids(session: AsyncSession, mint_address: str) -> list[dict[str, Any]]:
    """Active, unexpired bids for a mint grouped by marketplace, highest bid first"""
    if not mint_address or not _MINT_RE.match(mint_address):
        raise ValidationException("Invalid mint address", field="mint_address")

    now = datetime.utcnow()
    result = await session.execute(
        select(NftBid)
        .where(
            NftBid.mint_address == mint_address,
            NftBid.status == "active",
            (NftBid.expires_at.is_(None)) | (NftBid.expires_at > now),
        )
        .order_by(NftBid.bid_amount.desc())
    )

    grouped: dict[str, list[NftBid]] = defaultdict(list)
    for bid in result.scalars().all():
        grouped[bid.marketplace].append(bid)

    summary = []
    for marketplace, bids in grouped.items():
        amounts = [float(b.bid_amount) for b in bids]
        summary.append({
            "mint_address": mint_address,
            "marketplace": marketplace,
            "bid_count": len(bids),
            "min_bid": min(amounts),
            "max_bid": max(amounts),
            "avg_bid": sum(amounts) / len(amounts),
            "bids": [
                {"bidder": b.bidder_address, "amount": float(b.bid_amount), "timestamp": b.timestamp}
                for b in bids
            ],
        })
    return summary


async def set_indexer_state(session: AsyncSession, key: str, value: str) -> None:
    insert = _dialect_insert(session)
    stmt = insert(IndexerState.__table__).values(key=key, value=value, updated_at=datetime.utcnow())
    stmt = stmt.on_conflict_do_update(
        index_elements=["key"],
        set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
    )
    await session.execute(stmt)


async def get_indexer_state(session: AsyncSession, key: str) -> str | None:
    result = await session.execute(select(IndexerState.value).where(IndexerState.key == key))
    return result.scalar_one_or_none()
