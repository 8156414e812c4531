"""
Normalized event envelope.

Provider transactions arrive in a loose JSON shape (enhanced transactions,
backfill pages, or hand-built test events). ``normalize`` reduces them to
the fields classification and upserts rely on.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.core.exceptions import MalformedEventError


@dataclass(frozen=True)
class EventEnvelope:
    signature: str
    timestamp: datetime
    type: str
    touched_accounts: tuple[str, ...] = ()
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def nft_event(self) -> dict[str, Any]:
        """NFT sub-event (``events.nft`` or a top-level ``nft``), empty if absent"""
        events = self.payload.get("events")
        if isinstance(events, dict) and isinstance(events.get("nft"), dict):
            return events["nft"]
        nft = self.payload.get("nft")
        return nft if isinstance(nft, dict) else {}

    def touches(self, addresses: set[str] | frozenset[str]) -> bool:
        return any(account in addresses for account in self.touched_accounts)


def parse_timestamp(value: Any) -> datetime:
    """Unix seconds, milliseconds or ISO string; naive UTC like the rest of the models"""
    if value is None or value == "":
        return datetime.utcnow()
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10**11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            raise MalformedEventError(f"Unparseable timestamp: {value!r}")
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise MalformedEventError(f"Unparseable timestamp: {value!r}")
        return parsed.astimezone(timezone.utc).replace(tzinfo=None) if parsed.tzinfo else parsed
    raise MalformedEventError(f"Unparseable timestamp: {value!r}")


def _collect_accounts(raw: dict[str, Any]) -> tuple[str, ...]:
    seen: dict[str, None] = {}

    def _add(value: Any) -> None:
        if isinstance(value, str) and value:
            seen.setdefault(value, None)

    for entry in raw.get("accountData") or []:
        if isinstance(entry, dict):
            _add(entry.get("account"))
            _add(entry.get("program"))
    for instruction in raw.get("instructions") or []:
        if isinstance(instruction, dict):
            _add(instruction.get("programId"))
            for account in instruction.get("accounts") or []:
                _add(account)
    for account in raw.get("accountAddresses") or raw.get("accounts") or []:
        _add(account)
    for key in ("programId", "source_program"):
        _add(raw.get(key))

    events = raw.get("events")
    if isinstance(events, dict) and isinstance(events.get("nft"), dict):
        _add(events["nft"].get("programId"))

    return tuple(seen)


def normalize(raw: dict[str, Any]) -> EventEnvelope:
    """Build an envelope; raises MalformedEventError when the signature is missing"""
    if not isinstance(raw, dict):
        raise MalformedEventError("Event must be a JSON object")

    signature = raw.get("signature")
    if not isinstance(signature, str) or not signature.strip():
        raise MalformedEventError("Event has no signature")

    event_type = raw.get("type")
    if not event_type:
        nft = raw.get("events", {}).get("nft") if isinstance(raw.get("events"), dict) else None
        event_type = (nft or {}).get("type") if isinstance(nft, dict) else None

    return EventEnvelope(
        signature=signature.strip(),
        timestamp=parse_timestamp(raw.get("timestamp") or raw.get("blockTime")),
        type=str(event_type or "UNKNOWN").upper(),
        touched_accounts=_collect_accounts(raw),
        payload=raw,
    )
