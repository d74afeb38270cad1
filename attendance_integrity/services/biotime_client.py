"""
BioTime API Client
Handles JWT authentication and paginated transaction queries against the
terminal vendor's REST API.
"""
import time
from datetime import datetime
from typing import Optional, Dict, List, Any, Callable

import httpx
import structlog

from ..config import settings
from ..exceptions import PunchSourceError, TransientSourceError
from .cache import TTLCache, MemoryTTLCache
from .punch_source import PunchSource, PunchEvent
from .time_rules import to_local_naive

logger = structlog.get_logger(__name__)

TOKEN_CACHE_KEY = "biotime:jwt"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_direction(punch_state: Any, punch_state_display: Optional[str] = None) -> str:
    state = str(punch_state).strip().lower() if punch_state is not None else ""
    display = (punch_state_display or "").strip().lower()
    if state in ("0", "check in") or display == "check in":
        return "in"
    if state in ("1", "check out") or display == "check out":
        return "out"
    return "unknown"


class BioTimeClient(PunchSource):
    """Client for the BioTime transactions API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        cache: Optional[TTLCache] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = (base_url or settings.biotime_base_url).rstrip("/") + "/"
        self.username = username or settings.biotime_username
        self.password = password or settings.biotime_password
        self.cache = cache or MemoryTTLCache()
        self.page_size = settings.biotime_page_size
        self.page_delay_s = settings.biotime_page_delay_ms / 1000.0
        self._transport = transport
        self._sleep = sleep

        if not self.username or not self.password:
            raise ValueError("BioTime username and password are required")

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=settings.biotime_timeout_s,
            transport=self._transport,
        )

    def _send(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """Send a request, mapping transport failures onto the engine's error types."""
        try:
            with self._client() as client:
                response = client.request(method, endpoint, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientSourceError(f"BioTime timeout on {endpoint}: {e}")
        except httpx.TransportError as e:
            raise TransientSourceError(f"BioTime transport error on {endpoint}: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSourceError(
                f"BioTime returned {response.status_code} for {endpoint}",
                status_code=response.status_code,
            )
        return response

    def _get_token(self, force_refresh: bool = False) -> str:
        if not force_refresh:
            cached = self.cache.get(TOKEN_CACHE_KEY)
            if cached:
                return cached

        response = self._send(
            "POST",
            "jwt-api-token-auth/",
            json={"username": self.username, "password": self.password},
        )
        if response.status_code >= 400:
            raise PunchSourceError(f"BioTime authentication failed ({response.status_code})")
        token = (response.json() or {}).get("token")
        if not token:
            raise PunchSourceError("BioTime authentication returned no token")

        self.cache.set(TOKEN_CACHE_KEY, token, settings.biotime_token_ttl_s)
        logger.info("BioTime token refreshed")
        return token

    def _request(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Authenticated GET. A 401 refreshes the token once."""
        headers = {"Authorization": f"JWT {self._get_token()}"}
        response = self._send("GET", endpoint, params=params, headers=headers)
        if response.status_code == 401:
            headers = {"Authorization": f"JWT {self._get_token(force_refresh=True)}"}
            response = self._send("GET", endpoint, params=params, headers=headers)
        if response.status_code >= 400:
            raise PunchSourceError(f"BioTime returned {response.status_code} for {endpoint}")
        return response.json()

    def _fetch_all(self, filters: Dict[str, Any]) -> List[PunchEvent]:
        events: List[PunchEvent] = []
        page = 1
        while True:
            params = dict(filters, page_size=self.page_size, page=page)
            payload = self._request("iclock/api/transactions/", params)
            rows = payload.get("data") or []
            for row in rows:
                event = self._to_event(row)
                if event is not None:
                    events.append(event)

            if len(rows) < self.page_size or not payload.get("next", True):
                break
            page += 1
            if self.page_delay_s:
                self._sleep(self.page_delay_s)

        logger.info("BioTime transactions fetched", filters=filters, records=len(events), pages=page)
        return events

    def _to_event(self, row: Dict[str, Any]) -> Optional[PunchEvent]:
        emp_code = str(row.get("emp_code") or "").strip()
        raw_time = row.get("punch_time")
        if not emp_code or not raw_time:
            logger.warning("BioTime row skipped", transaction_id=row.get("id"), reason="missing emp_code or punch_time")
            return None
        try:
            punch_time = to_local_naive(datetime.fromisoformat(str(raw_time)))
        except ValueError:
            logger.warning("BioTime row skipped", transaction_id=row.get("id"), reason="bad punch_time", value=raw_time)
            return None

        external_id = row.get("id")
        return PunchEvent(
            employee_code=emp_code,
            punch_time=punch_time,
            direction=parse_direction(row.get("punch_state"), row.get("punch_state_display")),
            external_id=int(external_id) if external_id is not None else None,
            terminal_sn=row.get("terminal_sn"),
            terminal_alias=row.get("terminal_alias"),
            payload=row,
        )

    def fetch_by_time_range(self, start: datetime, end: datetime) -> List[PunchEvent]:
        return self._fetch_all({
            "punch_time__gte": start.strftime(TIME_FORMAT),
            "punch_time__lte": end.strftime(TIME_FORMAT),
        })

    def fetch_by_id_range(self, start_id: int, end_id: int) -> List[PunchEvent]:
        return self._fetch_all({"id__gte": start_id, "id__lte": end_id})
