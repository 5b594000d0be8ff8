from datetime import datetime
from typing import Optional

from clients.store import BaseDocumentModel, BaseEntityData


class ProcessedEventData(BaseEntityData):
    event_type: str
    transaction_id: Optional[str] = None
    received_at: datetime


class ProcessedEvent(BaseDocumentModel[ProcessedEventData]):
    """Keyed by the gateway event id; inserted once per event."""

    _collection_name = "processed_events"
