"""Provider clients and event aggregation"""

from profilesync.ingestion.event_processor import EventAggregator
from profilesync.ingestion.mixpanel_client import MixpanelClient
from profilesync.ingestion.provider import ProviderClient, ProviderPage, TimeRange

__all__ = ["EventAggregator", "MixpanelClient", "ProviderClient", "ProviderPage", "TimeRange"]
