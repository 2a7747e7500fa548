"""
Live score gateway over the DataGolf live-tournament-stats feed.

The feed only ever reports the event currently in play for a tour and is
eventually consistent: players may be missing, `thru` may lag, and
`today` may be blank for players who have not teed off. Parsing is
therefore lenient per player; a malformed row is skipped, never fatal.

Usage:
    gateway = DataGolfGateway(api_key=settings.DATAGOLF_API_KEY)
    standings = await gateway.fetch_round_standings(tournament, 2)
    await gateway.close()
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.core.config import settings
from app.core.exceptions import TransientFeedError
from app.core.logging import get_logger
from app.core.metrics import record_datagolf_request_success, record_datagolf_request_failure
from app.models import Tournament
from app.services.core.circuit_breaker import datagolf_breaker, with_circuit_breaker
from app.utils.timezone import parse_feed_timestamp

logger = get_logger(__name__)

LIVE_STATS_FIELDS = "position,thru,today,total"

# Feed markers meaning "finished the round"
FINISHED_THRU_MARKERS = {"F", "F*", "FIN"}


@dataclass
class StandingRecord:
    """One player's live status for a round, as reported by the feed."""

    player_id: str
    player_name: Optional[str] = None
    position: Optional[str] = None
    today: Optional[int] = None
    thru: Optional[int] = None
    total: Optional[int] = None
    feed_updated_at: Optional[datetime] = None


def _parse_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.upper() == "E":  # Even par
        return 0
    try:
        return int(float(text))
    except ValueError:
        return None


def _parse_thru(value: Any) -> Optional[int]:
    if isinstance(value, str) and value.strip().upper() in FINISHED_THRU_MARKERS:
        return 18
    return _parse_int(value)


def parse_live_stats(payload: Dict[str, Any]) -> List[StandingRecord]:
    """
    Convert a live-tournament-stats payload into StandingRecords.

    Rows without a player id are dropped; every other field is optional.
    """
    feed_updated_at = parse_feed_timestamp(payload.get("last_updated"))
    records: List[StandingRecord] = []

    for row in payload.get("live_stats") or []:
        if not isinstance(row, dict):
            continue
        player_id = row.get("dg_id")
        if player_id in (None, ""):
            continue

        position = row.get("position")
        records.append(
            StandingRecord(
                player_id=str(player_id),
                player_name=row.get("player_name"),
                position=str(position).strip() if position not in (None, "") else None,
                today=_parse_int(row.get("today")),
                thru=_parse_thru(row.get("thru")),
                total=_parse_int(row.get("total")),
                feed_updated_at=feed_updated_at,
            )
        )

    return records


class LiveScoreGateway(ABC):
    """Source of per-player round standings."""

    @abstractmethod
    async def fetch_round_standings(self, tournament: Tournament, round_num: int) -> List[StandingRecord]:
        """
        Fetch standings for one round.

        Raises:
            TransientFeedError: Feed unavailable, timed out or circuit open
        """

    async def close(self) -> None:
        return None


def _feed_unavailable(self, url: str, *args, **kwargs):
    raise TransientFeedError(f"DataGolf feed circuit is open, skipped {url.split('?')[0]}")


class DataGolfGateway(LiveScoreGateway):
    """LiveScoreGateway backed by the DataGolf HTTP feeds."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.DATAGOLF_API_KEY
        self.base_url = (base_url or settings.DATAGOLF_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.DATAGOLF_TIMEOUT
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def build_live_stats_url(self, tour: str, round_num: int) -> str:
        return (
            f"{self.base_url}/preds/live-tournament-stats"
            f"?tour={tour}&stats={LIVE_STATS_FIELDS}&round={round_num}"
            f"&display=value&file_format=json&key={self.api_key}"
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.RequestError, httpx.TimeoutException)),
        reraise=True,
    )
    @with_circuit_breaker(datagolf_breaker, fallback_func=_feed_unavailable)
    async def _fetch_json(self, url: str) -> Dict[str, Any]:
        client = await self._get_client()
        response = await client.get(url)
        response.raise_for_status()
        return response.json()

    async def fetch_round_standings(self, tournament: Tournament, round_num: int) -> List[StandingRecord]:
        url = self.build_live_stats_url(tournament.tour or settings.DATAGOLF_TOUR, round_num)

        try:
            payload = await self._fetch_json(url)
        except httpx.TimeoutException as e:
            record_datagolf_request_failure("timeout")
            raise TransientFeedError(
                f"DataGolf feed timed out for {tournament.name} round {round_num}",
                tournament_id=tournament.id,
            ) from e
        except httpx.HTTPStatusError as e:
            record_datagolf_request_failure(f"http_{e.response.status_code}")
            raise TransientFeedError(
                f"DataGolf feed returned {e.response.status_code} for {tournament.name} round {round_num}",
                tournament_id=tournament.id,
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            record_datagolf_request_failure("network")
            raise TransientFeedError(
                f"DataGolf feed unreachable for {tournament.name} round {round_num}: {e}",
                tournament_id=tournament.id,
            ) from e
        except TransientFeedError as e:
            record_datagolf_request_failure("circuit_open")
            e.entity_id = tournament.id
            raise
        except ValueError as e:
            record_datagolf_request_failure("invalid_json")
            raise TransientFeedError(
                f"DataGolf feed returned invalid JSON for {tournament.name} round {round_num}",
                tournament_id=tournament.id,
            ) from e

        record_datagolf_request_success()

        event_name = payload.get("event_name") if isinstance(payload, dict) else None
        if event_name and tournament.name and event_name.strip().lower() != tournament.name.strip().lower():
            # Feed has moved on to (or not yet reached) this event
            logger.info(
                f"DataGolf live feed reports '{event_name}', not '{tournament.name}' - no standings for round {round_num}"
            )
            return []

        standings = parse_live_stats(payload if isinstance(payload, dict) else {})
        logger.debug(f"Fetched {len(standings)} standings for {tournament.name} round {round_num}")
        return standings
