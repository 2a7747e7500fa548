"""Live scoring feed gateways."""
from app.services.scoring.live_score_gateway import (
    DataGolfGateway,
    LiveScoreGateway,
    StandingRecord,
    parse_live_stats,
)

__all__ = [
    "DataGolfGateway",
    "LiveScoreGateway",
    "StandingRecord",
    "parse_live_stats",
]
