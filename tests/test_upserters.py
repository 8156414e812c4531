"""
Tests for category upserters, the active-bids read side and indexer state
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from app.core.exceptions import ValidationException
from app.db.models.category_records import LendingRate, NftBid, NftPrice, TokenPrice
from app.domain.classifier import EventCategory, classify
from app.domain.events import normalize
from app.domain.upserters import (
    UPSERTERS,
    apply_envelope,
    bid_status,
    get_active_bids,
    get_indexer_state,
    price_status,
    set_indexer_state,
    transform_lending_rate,
    transform_token_price,
)
from tests.conftest import DEX_PROGRAM, LENDING_PROGRAM, NFT_PROGRAM

MINT = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"


async def _apply(services, raw):
    envelope = normalize(raw)
    async with services.datastores.session(None) as session:
        async with session.begin():
            return await apply_envelope(session, envelope, classify(envelope))


async def _rows(services, model):
    async with services.datastores.session(None) as session:
        return (await session.execute(select(model))).scalars().all()


class TestStatusMapping:

    @pytest.mark.unit
    @pytest.mark.parametrize("event_type,status", [
        ("BID_PLACED", "active"),
        ("NFT_BID", "active"),
        ("BID_CANCELLED", "cancelled"),
        ("NFT_BID_ACCEPTED", "accepted"),
        ("SOMETHING_ELSE", "expired"),
    ])
    def test_bid_status(self, event_type, status):
        assert bid_status(event_type) == status

    @pytest.mark.unit
    @pytest.mark.parametrize("event_type,status", [
        ("NFT_LISTING", "listed"),
        ("NFT_SALE", "sold"),
        ("NFT_CANCEL_LISTING", "cancelled"),
        ("TRANSFER", "listed"),
    ])
    def test_price_status(self, event_type, status):
        assert price_status(event_type) == status


class TestTransforms:

    @pytest.mark.unit
    def test_token_price_from_decimals(self):
        envelope = normalize({
            "signature": "SWAP1",
            "type": "SWAP",
            "accountData": [{"account": DEX_PROGRAM}],
            "tokenTransfers": [
                {"mint": "SOL", "symbol": "SOL", "amount": 2_000_000_000, "decimals": 9},
                {"mint": "USDC", "amount": 50_000_000, "decimals": 6},
            ],
        })
        [row] = transform_token_price(envelope)
        assert row["token_mint"] == "SOL"
        assert row["price_usd"] == pytest.approx(25.0)
        assert row["platform"] == "Raydium"

    @pytest.mark.unit
    def test_token_price_zero_input_skipped(self):
        envelope = normalize({
            "signature": "SWAP0",
            "type": "SWAP",
            "tokenTransfers": [
                {"mint": "SOL", "amount": 0, "decimals": 9},
                {"mint": "USDC", "amount": 5, "decimals": 6},
            ],
        })
        assert transform_token_price(envelope) == []

    @pytest.mark.unit
    @pytest.mark.parametrize("in_decimals,out_decimals", [(400, 6), (9, -400), (-400, -400)])
    def test_token_price_extreme_decimals_skipped(self, in_decimals, out_decimals):
        envelope = normalize({
            "signature": "SWAPX",
            "type": "SWAP",
            "tokenTransfers": [
                {"mint": "SOL", "amount": 1, "decimals": in_decimals},
                {"mint": "USDC", "amount": 1, "decimals": out_decimals},
            ],
        })
        assert transform_token_price(envelope) == []

    @pytest.mark.unit
    def test_token_price_non_finite_amount_skipped(self):
        envelope = normalize({
            "signature": "SWAPN",
            "type": "SWAP",
            "tokenTransfers": [
                {"mint": "SOL", "amount": 1, "decimals": 9},
                {"mint": "USDC", "amount": "inf", "decimals": 6},
            ],
        })
        assert transform_token_price(envelope) == []

    @pytest.mark.unit
    def test_lending_rates_percent_to_fraction(self):
        envelope = normalize({
            "signature": "L1",
            "accountData": [
                {
                    "account": "reserve",
                    "program": LENDING_PROGRAM,
                    "data": {
                        "tokenMint": "USDC", "totalSupply": 1000, "totalBorrow": 250,
                        "supplyRate": 4, "borrowRate": 9,
                    },
                },
                {"account": "other", "program": "not-a-lender", "data": {"tokenMint": "X"}},
            ],
        })
        [row] = transform_lending_rate(envelope)
        assert row["protocol"] == "Solend"
        assert row["supply_rate"] == pytest.approx(0.04)
        assert row["borrow_rate"] == pytest.approx(0.09)
        assert row["utilization"] == pytest.approx(0.25)

    @pytest.mark.unit
    def test_nft_without_mint_produces_nothing(self):
        envelope = normalize({"signature": "B", "type": "NFT_BID"})
        assert UPSERTERS[EventCategory.NFT_BID].transform(envelope) == []


class TestUpsertIdempotence:

    @pytest.mark.unit
    async def test_nft_sale_stored_as_sold(self, services):
        written = await _apply(services, {"signature": "SIG1", "type": "NFT_SALE", "mint": "MINT1", "price": 5})

        assert written == {EventCategory.NFT_PRICE: 1}
        [row] = await _rows(services, NftPrice)
        assert row.signature == "SIG1"
        assert row.mint_address == "MINT1"
        assert row.status == "sold"
        assert row.price == 5

    @pytest.mark.unit
    async def test_redelivery_does_not_duplicate(self, services):
        raw = {"signature": "SIG1", "type": "NFT_SALE", "mint": "MINT1", "price": 5}
        for _ in range(3):
            await _apply(services, raw)

        rows = await _rows(services, NftPrice)
        assert len(rows) == 1
        assert rows[0].price == 5

    @pytest.mark.unit
    async def test_last_write_wins_on_mutable_fields_only(self, services):
        await _apply(services, {
            "signature": "SIG2", "type": "NFT_LISTING", "mint": "MINT1", "price": 5,
            "source": "FIRST", "seller": "seller-a",
        })
        await _apply(services, {
            "signature": "SIG2", "type": "NFT_SALE", "mint": "MINT1", "price": 7,
            "source": "SECOND", "seller": "seller-b",
        })

        [row] = await _rows(services, NftPrice)
        assert row.status == "sold"
        assert row.price == 7
        assert row.marketplace == "FIRST"
        assert row.seller_address == "seller-a"

    @pytest.mark.unit
    async def test_composite_key_for_token_prices(self, services):
        raw = {
            "signature": "SWAP1",
            "type": "SWAP",
            "tokenTransfers": [
                {"mint": "SOL", "amount": 1_000_000_000, "decimals": 9},
                {"mint": "USDC", "amount": 20_000_000, "decimals": 6},
            ],
        }
        await _apply(services, raw)
        raw["tokenTransfers"][1]["amount"] = 30_000_000
        await _apply(services, raw)

        [row] = await _rows(services, TokenPrice)
        assert row.price_usd == pytest.approx(30.0)

    @pytest.mark.unit
    async def test_lending_row_upserted(self, services):
        raw = {
            "signature": "L1",
            "accountData": [{
                "account": "reserve",
                "program": LENDING_PROGRAM,
                "data": {"tokenMint": "USDC", "totalSupply": 100, "totalBorrow": 10, "supplyRate": 2},
            }],
        }
        await _apply(services, raw)
        raw["accountData"][0]["data"]["totalBorrow"] = 50
        await _apply(services, raw)

        [row] = await _rows(services, LendingRate)
        assert row.utilization == pytest.approx(0.5)

    @pytest.mark.unit
    async def test_failed_delivery_rolls_back_every_category(self, services):
        """A failure part-way leaves no rows from the same transaction"""
        envelope = normalize({"signature": "SIG3", "type": "NFT_SALE", "mint": "MINT1", "price": 1})

        with pytest.raises(RuntimeError):
            async with services.datastores.session(None) as session:
                async with session.begin():
                    await apply_envelope(session, envelope, [EventCategory.NFT_PRICE])
                    raise RuntimeError("datastore went away")

        assert await _rows(services, NftPrice) == []


class TestActiveBids:

    async def _bid(self, services, signature, amount, *, event_type="BID_PLACED", program=NFT_PROGRAM, **extra):
        raw = {
            "signature": signature,
            "type": event_type,
            "mint": MINT,
            "amount": amount,
            "bidder": f"bidder-{signature}",
            "accountAddresses": [program] if program else [],
        }
        raw.update(extra)
        await _apply(services, raw)

    @pytest.mark.unit
    async def test_grouped_by_marketplace_highest_first(self, services):
        await self._bid(services, "B1", 1.5)
        await self._bid(services, "B2", 3.0)
        await self._bid(services, "B3", 2.0, program=None, source="TENSOR")
        await self._bid(services, "B4", 9.0, event_type="BID_CANCELLED")

        async with services.datastores.session(None) as session:
            summary = await get_active_bids(session, MINT)

        by_marketplace = {entry["marketplace"]: entry for entry in summary}
        assert set(by_marketplace) == {"Magic Eden", "TENSOR"}

        magic_eden = by_marketplace["Magic Eden"]
        assert magic_eden["bid_count"] == 2
        assert magic_eden["max_bid"] == pytest.approx(3.0)
        assert magic_eden["min_bid"] == pytest.approx(1.5)
        assert magic_eden["avg_bid"] == pytest.approx(2.25)
        assert [b["amount"] for b in magic_eden["bids"]] == [3.0, 1.5]

    @pytest.mark.unit
    async def test_expired_bids_excluded(self, services):
        past = (datetime.utcnow() - timedelta(hours=1)).isoformat()
        await self._bid(services, "B1", 1.0, expiresAt=past)

        async with services.datastores.session(None) as session:
            assert await get_active_bids(session, MINT) == []

    @pytest.mark.unit
    async def test_cancellation_updates_existing_bid(self, services):
        await self._bid(services, "B1", 1.0)
        await self._bid(services, "B1", 1.0, event_type="BID_CANCELLED")

        async with services.datastores.session(None) as session:
            assert await get_active_bids(session, MINT) == []
            count = await session.scalar(select(func.count()).select_from(NftBid))
        assert count == 1

    @pytest.mark.unit
    @pytest.mark.parametrize("mint", ["", "short", "x" * 45, "bad-chars!" * 4])
    async def test_invalid_mint_rejected(self, services, mint):
        async with services.datastores.session(None) as session:
            with pytest.raises(ValidationException):
                await get_active_bids(session, mint)


class TestIndexerState:

    @pytest.mark.unit
    async def test_set_and_overwrite(self, services):
        async with services.datastores.session(None) as session:
            async with session.begin():
                await set_indexer_state(session, "job:1:last_signature", "S1")
            async with session.begin():
                await set_indexer_state(session, "job:1:last_signature", "S2")

            assert await get_indexer_state(session, "job:1:last_signature") == "S2"
            assert await get_indexer_state(session, "missing") is None
