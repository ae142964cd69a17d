import math
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict
from copybot.core.models import Side, FeedChannel, SourceConfig


def synthetic_key(address: str, market_id: str, outcome: str, timestamp: datetime, bucket_seconds: float) -> str:
    """
    Idempotency key for activity that has no natural transaction hash.

    Derived from (address, market, outcome, timestamp floored to the bucket).
    Two detections of the same delta inside one bucket collapse to one key.
    """
    bucket = max(int(bucket_seconds), 1)
    rounded = math.floor(timestamp.timestamp() / bucket) * bucket
    return f"{address.lower()}:{market_id}:{outcome}:{rounded}"


class TradeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_address: str
    source_label: str = "Unknown"
    market_id: str
    token_id: str
    outcome: str
    side: Side
    amount: float
    price: float
    timestamp: datetime
    tx_hash: Optional[str] = None
    channel: FeedChannel
    synthetic_bucket_seconds: float = 15.0
    config: SourceConfig

    @property
    def idempotency_key(self) -> str:
        if self.tx_hash:
            return self.tx_hash.lower()
        return synthetic_key(
            self.source_address, self.market_id, self.outcome,
            self.timestamp, self.synthetic_bucket_seconds,
        )

    @property
    def notional(self) -> float:
        return self.amount * self.price
