"""
Database Models
"""
from app.db.models.indexing_job import IndexingJob
from app.db.models.webhook_registration import WebhookRegistration
from app.db.models.webhook_delivery_log import WebhookDeliveryLog
from app.db.models.category_records import NftBid, NftPrice, TokenPrice, LendingRate, IndexerState

__all__ = [
    "IndexingJob",
    "WebhookRegistration",
    "WebhookDeliveryLog",
    "NftBid",
    "NftPrice",
    "TokenPrice",
    "LendingRate",
    "IndexerState",
]
