import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from flagcore.utils import remove_trailing_slash
from flagcore.version import VERSION

# Retry on both connect and read errors, GETs are idempotent
adapter = HTTPAdapter(
    max_retries=Retry(
        total=2,
        connect=2,
        read=2,
    )
)
_session = requests.sessions.Session()
_session.mount("https://", adapter)

US_INGESTION_ENDPOINT = "https://us.i.posthog.com"
EU_INGESTION_ENDPOINT = "https://eu.i.posthog.com"
DEFAULT_HOST = US_INGESTION_ENDPOINT
USER_AGENT = "flagcore/" + VERSION

LOCAL_EVALUATION_PATH = "/api/feature_flag/local_evaluation/"


def determine_server_host(host: Optional[str]) -> str:
    """Determines the server host to use."""
    host_or_default = host or DEFAULT_HOST
    trimmed_host = remove_trailing_slash(host_or_default)
    if trimmed_host in ("https://app.posthog.com", "https://us.posthog.com"):
        return US_INGESTION_ENDPOINT
    elif trimmed_host == "https://eu.posthog.com":
        return EU_INGESTION_ENDPOINT
    else:
        return host_or_default


@dataclass
class GetResponse:
    """
    Result of a definitions GET.

    `not_modified` is set when the server answered 304 to our `If-None-Match`,
    in which case `data` is None and the caller should keep what it has.
    """

    data: Any
    etag: Optional[str] = None
    not_modified: bool = False


def get(
    api_key: str,
    url: str,
    host: Optional[str] = None,
    timeout: Optional[int] = None,
    etag: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> GetResponse:
    log = logging.getLogger("flagcore")
    url = remove_trailing_slash(host or DEFAULT_HOST) + url
    request_headers = {
        **(headers or {}),
        "Content-Type": "application/json",
        "Authorization": "Bearer %s" % api_key,
        "User-Agent": USER_AGENT,
    }
    if etag:
        request_headers["If-None-Match"] = etag

    res = _session.get(url, headers=request_headers, timeout=timeout)

    if res.status_code == 304:
        log.debug("GET %s not modified", url)
        # 304 may carry a refreshed ETag
        return GetResponse(
            data=None, etag=res.headers.get("ETag") or etag, not_modified=True
        )

    data = _process_response(res, success_message=f"GET {url} completed successfully")
    return GetResponse(data=data, etag=res.headers.get("ETag"))


def local_evaluation_definitions(
    personal_api_key: str,
    project_api_key: str,
    host: Optional[str] = None,
    timeout: Optional[int] = None,
    etag: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> GetResponse:
    """Fetch flag definitions, group type mapping and cohorts for local evaluation"""
    return get(
        personal_api_key,
        f"{LOCAL_EVALUATION_PATH}?token={project_api_key}&send_cohorts",
        host,
        timeout=timeout,
        etag=etag,
        headers=headers,
    )


def _process_response(res: requests.Response, success_message: str) -> Any:
    log = logging.getLogger("flagcore")
    if res.status_code == 200:
        try:
            data = res.json()
        except ValueError as e:
            raise MalformedResponseError(res.status_code, f"Invalid JSON body: {e}") from e
        log.debug(success_message)
        return data

    if res.status_code == 402:
        raise QuotaLimitError(res.status_code, "Feature flags quota limited")

    try:
        payload = res.json()
        log.debug("received response: %s", payload)
        raise APIError(res.status_code, payload["detail"])
    except (KeyError, TypeError, ValueError):
        raise APIError(res.status_code, res.text)


class APIError(Exception):
    def __init__(self, status: Union[int, str], message: str):
        self.message = message
        self.status = status

    def __str__(self):
        msg = "[flagcore] {0} ({1})"
        return msg.format(self.message, self.status)


class QuotaLimitError(APIError):
    pass


class MalformedResponseError(APIError):
    """A 200 response whose body couldn't be decoded."""
