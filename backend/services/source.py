"""
Source Client
Fetches job records from the FileMaker Data API.

Flow:
    authenticate() → session token (reused for 14 minutes)
    fetch_records() → _find over a job_date range and allowed job types
                    → on failure, GET /records with client-side filtering
    close_session() → DELETE the session token

Every transport / auth failure is raised as FetchError.
"""

import time
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import requests
from loguru import logger

from core.exceptions import FetchError
from core.models import Record, to_record


TOKEN_TTL_SEC = 14 * 60
DEFAULT_JOB_TYPES = ("Delivery", "Pickup", "Move", "Recover", "Drop", "Shuttle")
TERMINAL_STATUSES = ("DELETED", "")


class RecordSource(Protocol):
    """What the poller needs from an upstream system"""

    def fetch_records(self, limit: int, start_date: Optional[date] = None,
                      end_date: Optional[date] = None) -> List[Record]:
        ...

    def authenticate(self) -> str:
        ...

    def close_session(self) -> None:
        ...


def format_fm_date(d: date) -> str:
    """FileMaker US date, e.g. 3/7/2025"""
    return f"{d.month}/{d.day}/{d.year}"


def parse_fm_date(value: Any) -> Optional[datetime]:
    try:
        return datetime.strptime(str(value), "%m/%d/%Y")
    except (TypeError, ValueError):
        return None


class FileMakerClient:
    """
    FileMaker Data API client (requests).

    Usage:
        client = FileMakerClient("fm.example.com", "Jobs", "user", "secret")
        records = client.fetch_records(limit=100)
        client.close_session()
    """

    def __init__(
        self,
        host: str,
        database: str,
        username: str,
        password: str,
        layout: str = "jobs_api",
        timeout: float = 30.0,
        lookback_days: int = 30,
        job_types: Sequence[str] = DEFAULT_JOB_TYPES,
        id_field: str = "_kp_job_id",
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.host = host
        self.database = database
        self.layout = layout
        self.timeout = timeout
        self.lookback_days = lookback_days
        self.job_types = list(job_types)
        self.id_field = id_field
        self._auth = (username, password)
        self._session = session or requests.Session()
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expiry = 0.0

    @property
    def base_url(self) -> str:
        return f"https://{self.host}/fmi/data/vLatest/databases/{self.database}"

    # =========================================================================
    # Session
    # =========================================================================

    def authenticate(self) -> str:
        """Return a valid session token, logging in when needed"""
        if self._token and self._clock() < self._token_expiry:
            return self._token

        try:
            resp = self._session.post(
                f"{self.base_url}/sessions",
                json={},
                auth=self._auth,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            token = resp.json().get("response", {}).get("token")
        except (requests.RequestException, ValueError) as e:
            raise FetchError(f"Authentication failed: {e}", {"host": self.host}) from e

        if not token:
            raise FetchError("Failed to retrieve token from FileMaker", {"host": self.host})

        self._token = token
        self._token_expiry = self._clock() + TOKEN_TTL_SEC
        logger.debug(f"FileMaker session opened on {self.host}")
        return token

    def close_session(self) -> None:
        """Release the session token; failures are logged only"""
        if not self._token:
            return
        try:
            self._session.delete(f"{self.base_url}/sessions/{self._token}", timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Error closing FileMaker session: {e}")
        finally:
            self._token = None
            self._token_expiry = 0.0

    def _headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    # =========================================================================
    # Queries
    # =========================================================================

    def fetch_records(self, limit: int, start_date: Optional[date] = None,
                      end_date: Optional[date] = None) -> List[Record]:
        """
        Fetch recent jobs, newest job_date first.

        Args:
            limit: Maximum rows requested
            start_date: Defaults to `lookback_days` ago
            end_date: Defaults to today
        """
        token = self.authenticate()
        start = start_date or (date.today() - timedelta(days=self.lookback_days))
        end = end_date or date.today()

        try:
            rows = self._find(token, limit, start, end)
        except FetchError as e:
            logger.warning(f"Find query failed, falling back to record listing: {e.message}")
            rows = None

        if rows is None:
            rows = self._records_fallback(token, limit, start)

        records = []
        for row in rows:
            record = to_record(row, self.id_field)
            if record is not None:
                records.append(record)
        return records

    def _find(self, token: str, limit: int, start: date, end: date) -> Optional[List[Dict[str, Any]]]:
        query = {
            "query": [{
                "job_date": f"{format_fm_date(start)}...{format_fm_date(end)}",
                "job_type": "...".join(self.job_types),
            }],
            "sort": [{"fieldName": "job_date", "sortOrder": "descend"}],
            "limit": limit,
            "offset": 1,
        }
        try:
            resp = self._session.post(
                f"{self.base_url}/layouts/{self.layout}/_find",
                json=query,
                headers=self._headers(token),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json().get("response", {}).get("data")
        except (requests.RequestException, ValueError) as e:
            raise FetchError(f"Find query failed: {e}", {"layout": self.layout}) from e

        if data is None:
            return None
        logger.debug(f"Retrieved {len(data)} jobs from {format_fm_date(start)} to {format_fm_date(end)}")
        return data

    def _records_fallback(self, token: str, limit: int, start: date) -> List[Dict[str, Any]]:
        try:
            resp = self._session.get(
                f"{self.base_url}/layouts/{self.layout}/records",
                params={"_limit": limit, "_offset": 1},
                headers=self._headers(token),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            rows = resp.json().get("response", {}).get("data") or []
        except (requests.RequestException, ValueError) as e:
            raise FetchError(f"Record listing failed: {e}", {"layout": self.layout}) from e

        start_dt = datetime(start.year, start.month, start.day)
        kept = []
        for row in rows:
            fields = row.get("fieldData", {})
            if fields.get("job_status") in TERMINAL_STATUSES or fields.get("job_status") is None:
                continue
            if fields.get("job_type") not in self.job_types:
                continue
            job_date = parse_fm_date(fields.get("job_date"))
            if job_date is None or job_date < start_dt:
                continue
            kept.append((job_date, row))

        kept.sort(key=lambda item: item[0], reverse=True)
        logger.debug(f"Fallback: retrieved {len(kept)} filtered jobs")
        return [row for _, row in kept]
