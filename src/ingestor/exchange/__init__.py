"""Exchange client layer -- candle API integration via ccxt."""

from ingestor.exchange.ccxt_client import CcxtCandleClient
from ingestor.exchange.client import ExchangeClient

__all__ = ["CcxtCandleClient", "ExchangeClient"]
