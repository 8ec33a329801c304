import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import requests

from .errors import ConfigurationError, InternalError, UpstreamError

logger = logging.getLogger("oura-dashboard.upstream")

DEFAULT_OURA_API_BASE = "https://api.ouraring.com/v2/usercollection"


def is_success(res) -> bool:
    # requests' .ok is true for 3xx as well
    return 200 <= res.status_code < 300


class OuraClient:
    """
    Thin client for the two Oura collections the dashboard needs.

    The access token is handed in at construction; nothing here reads the
    environment.
    """

    def __init__(self, access_token: Optional[str], base_url: str = DEFAULT_OURA_API_BASE,
                 timeout: Optional[float] = None):
        self.access_token = access_token
        self.base_url = (base_url or DEFAULT_OURA_API_BASE).rstrip("/")
        self.timeout = timeout

    def _get(self, collection: str, start: str, end: str) -> requests.Response:
        return requests.get(
            f"{self.base_url}/{collection}",
            headers={"Authorization": f"Bearer {self.access_token}"},
            params={"start_date": start, "end_date": end},
            timeout=self.timeout,
        )

    def fetch_range(self, start: str, end: str) -> dict:
        """
        Fetch ``sleep`` and ``daily_sleep`` for an inclusive date range.

        Both requests run concurrently and both are waited on. Returns
        ``{"sleep": ..., "daily": ...}`` with the upstream bodies untouched.
        """
        if not self.access_token:
            raise ConfigurationError("Missing OURA token")

        try:
            with ThreadPoolExecutor(max_workers=2) as pool:
                sleep_future = pool.submit(self._get, "sleep", start, end)
                daily_future = pool.submit(self._get, "daily_sleep", start, end)
            sleep_res = sleep_future.result()
            daily_res = daily_future.result()

            if not is_success(sleep_res):
                logger.warning(f"Oura sleep fetch failed: HTTP {sleep_res.status_code}")
                raise UpstreamError("Sleep fetch failed", sleep_res.status_code, detail=sleep_res.text)
            if not is_success(daily_res):
                logger.warning(f"Oura daily_sleep fetch failed: HTTP {daily_res.status_code}")
                raise UpstreamError("Daily sleep fetch failed", daily_res.status_code, detail=daily_res.text)

            return {"sleep": sleep_res.json(), "daily": daily_res.json()}
        except UpstreamError:
            raise
        except Exception as e:
            logger.error("Oura range fetch failed", exc_info=True)
            raise InternalError("Unexpected error", detail=str(e)) from e
