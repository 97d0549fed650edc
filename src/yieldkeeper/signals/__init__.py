"""External advisory signals: venue yields and token prices."""

from .price import PriceClient
from .yield_signal import (
    SelectionOutcome,
    WinnerSelection,
    YieldApiClient,
    YieldCandidate,
    YieldSignal,
    YieldVenue,
    match_venues,
    select_winner,
)

__all__ = [
    "PriceClient",
    "SelectionOutcome",
    "WinnerSelection",
    "YieldApiClient",
    "YieldCandidate",
    "YieldSignal",
    "YieldVenue",
    "match_venues",
    "select_winner",
]
