"""
Event Classifier

Maps a normalized event to the closed set of categories it feeds. An event
may match none, one or several categories; unmatched events are dropped by
the caller.
"""
import enum

from app.core.logging import get_logger
from app.domain.events import EventEnvelope

logger = get_logger(__name__)


class EventCategory(str, enum.Enum):
    NFT_BID = "nft_bids"
    NFT_PRICE = "nft_prices"
    TOKEN_PRICE = "token_prices"
    LENDING_RATE = "lending_rates"


# Known program tables (program id -> display name)
NFT_MARKETPLACE_PROGRAMS: dict[str, str] = {
    "M2mx93ekt1fmXSVkTrUL9xVFHkmME8HTUi5Cyc5aF7K": "Magic Eden",
    "HYPERfwdTjyJ2SCaKHmpF2MtrXqWxrsotYDsTrshHWq8": "HyperSpace",
    "TSWAPaqyCSx2KABk68Shruf4rp7CxcNi8hAsbdwmHbN": "Tensor",
    "CJsLwbP1iu5DuUikHEJnLfANgKy6stB2uFgvBBHoyxwz": "Solanart",
}

DEX_PROGRAMS: dict[str, str] = {
    "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8": "Raydium",
    "9W959DqEETiGZocYWCQPaJ6sBmUzgfxXfqGeTEdp3aQP": "Orca",
    "JUP6i4ozu5ydDCnLiMogSckDPpbtr7BJ4FtzYWkb5Rk": "Jupiter",
    "srmqPvymJeFKQ4zGQed1GFppgkRHL9kaELCbyksJtPX": "Serum",
}

LENDING_PROGRAMS: dict[str, str] = {
    "Port7uDYB3wk6GJAw4KT1WpTeMtSu9bTcChBHkX2LfR": "Port Finance",
    "So1endDq2YkqhipRh3WViPa8hdiSpxWy6z3Z6tMCpAo": "Solend",
    "MFv2hWf31Z9kbCa1snEPYctwafyhdvnV7FZnsebVacA": "Mango Markets",
    "LendZqTs7gn5CTSJU1jWKhKuVpjJGom45nnwPb2AMTi": "Larix",
}

BID_EVENT_TYPES = frozenset({
    "NFT_BID", "NFT_BID_CANCELLED", "NFT_BID_ACCEPTED",
    "BID_PLACED", "BID_CANCELLED", "BID_ACCEPTED",
})

PRICE_EVENT_TYPES = frozenset({
    "NFT_LISTING", "NFT_SALE", "NFT_LISTING_CANCELLED", "NFT_CANCEL_LISTING",
})

SWAP_EVENT_TYPES = frozenset({"SWAP", "TOKEN_SWAP"})

_MARKETPLACES = frozenset(NFT_MARKETPLACE_PROGRAMS)
_DEXES = frozenset(DEX_PROGRAMS)
_LENDERS = frozenset(LENDING_PROGRAMS)


def program_name(envelope: EventEnvelope, table: dict[str, str], default: str = "Unknown") -> str:
    """Name of the first known program the event touches"""
    for account in envelope.touched_accounts:
        if account in table:
            return table[account]
    return default


def _has_priced_transfers(envelope: EventEnvelope) -> bool:
    transfers = envelope.payload.get("tokenTransfers") or []
    priced = [t for t in transfers if isinstance(t, dict) and t.get("decimals") is not None]
    return len(priced) >= 2


def _has_lending_account_data(envelope: EventEnvelope) -> bool:
    for entry in envelope.payload.get("accountData") or []:
        if not isinstance(entry, dict) or entry.get("program") not in _LENDERS:
            continue
        data = entry.get("data")
        if isinstance(data, dict) and all(k in data for k in ("totalSupply", "totalBorrow", "tokenMint")):
            return True
    return False


def classify(envelope: EventEnvelope) -> list[EventCategory]:
    """Categories an event belongs to, in EventCategory order"""
    matched: list[EventCategory] = []
    event_type = envelope.type
    on_marketplace = envelope.touches(_MARKETPLACES)

    if event_type in BID_EVENT_TYPES:
        matched.append(EventCategory.NFT_BID)

    if event_type in PRICE_EVENT_TYPES or (
        on_marketplace and event_type not in BID_EVENT_TYPES and envelope.nft_event
    ):
        matched.append(EventCategory.NFT_PRICE)

    if (event_type in SWAP_EVENT_TYPES or envelope.touches(_DEXES)) and _has_priced_transfers(envelope):
        matched.append(EventCategory.TOKEN_PRICE)

    if envelope.touches(_LENDERS) and _has_lending_account_data(envelope):
        matched.append(EventCategory.LENDING_RATE)

    if not matched:
        logger.debug(
            "Event matched no category",
            extra_data={"signature": envelope.signature, "type": event_type},
        )
    return matched
