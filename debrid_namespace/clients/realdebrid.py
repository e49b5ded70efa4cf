import logging
import threading
from typing import List, Dict, Any, Optional, Tuple

import requests

from .base import DebridClient, Download, Torrent
from ..utils import (
    APIError, api_error_from_response, bounded_timeout, check_cancelled, retry, sleep_or_cancel
)

ROOT_URL = "https://api.real-debrid.com/rest/1.0"

# Too Many Requests, Internal Server Error, Bad Gateway, Gateway Timeout,
# Bandwidth Limit Exceeded
RETRY_STATUS_CODES = (429, 500, 502, 504, 509)

DEFAULT_TIMEOUT = 30
DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_DELAY = 2


class RealDebridClient(DebridClient):
    """
    A real-debrid.com implementation of the DebridClient interface.
    """

    def __init__(
        self,
        api_key: str,
        root_url: str = ROOT_URL,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        retry_backoff: float = 1,
        cancel_event: Optional[threading.Event] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initializes the RealDebridClient.

        Args:
            api_key: The account's private API token, sent as `auth_token`.
            root_url: Base URL of the REST API.
            timeout: Per-request timeout in seconds.
            max_retries: Maximum number of attempts for retryable responses.
            retry_delay: Initial delay between attempts in seconds.
            retry_backoff: Multiplier applied to the delay after each attempt.
            cancel_event: When set, pending retries and new requests are aborted
                with `OperationCancelled`.
            session: An optional pre-configured `requests.Session`.
        """
        self.api_key = api_key
        self.root_url = root_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff
        self.cancel_event = cancel_event or threading.Event()
        self.session = session or requests.Session()

    def _base_params(self) -> Dict[str, str]:
        params = {}
        if self.api_key:
            params['auth_token'] = self.api_key
        return params

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Sends a request, retrying retryable statuses and connection failures.

        Raises:
            APIError: For non-2xx responses that are not retryable, or when the
                retries are exhausted. 503/404 raise `BrokenLinkError`.
            OperationCancelled: If the client's cancel event is set, or a `CancelScope`
                active on this thread is cancelled or runs out of time.
        """
        delay = self.retry_delay
        for attempt in range(1, self.max_retries + 1):
            check_cancelled(self.cancel_event, f"{method} {url}")
            try:
                response = self.session.request(method, url, timeout=bounded_timeout(self.timeout), **kwargs)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                if attempt == self.max_retries:
                    raise APIError(str(e), "connection failed") from e
                logging.warning(f"REMOTE: {method} {url} failed with '{e}'. Attempt {attempt}/{self.max_retries}. "
                                f"Retrying in {delay} seconds...")
                sleep_or_cancel(delay, self.cancel_event)
                delay *= self.retry_backoff
                continue
            except requests.exceptions.RequestException as e:
                raise APIError(str(e), "request failed") from e

            if response.status_code in RETRY_STATUS_CODES and attempt < self.max_retries:
                logging.debug(f"REMOTE: {method} {url} answered {response.status_code}. "
                              f"Attempt {attempt}/{self.max_retries}, retrying in {delay} seconds.")
                sleep_or_cancel(delay, self.cancel_event)
                delay *= self.retry_backoff
                continue
            if not 200 <= response.status_code < 300:
                raise api_error_from_response(response)
            return response
        # The loop either returns or raises on its final attempt.
        raise RuntimeError("Exited retry loop unexpectedly.")

    def call_json(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        form: Optional[Dict[str, str]] = None,
    ) -> Tuple[Any, requests.Response]:
        """Performs an authenticated API call and decodes the JSON body.

        Args:
            method: HTTP method.
            path: API path relative to the root URL, e.g. ``/torrents``.
            params: Extra query parameters.
            form: Multipart form fields.

        Returns:
            A tuple of the decoded body (None for empty responses) and the response.
        """
        query = self._base_params()
        if params:
            query.update({k: str(v) for k, v in params.items()})
        kwargs: Dict[str, Any] = {'params': query}
        if form:
            kwargs['files'] = {k: (None, v) for k, v in form.items()}
        response = self._send(method, self.root_url + path, **kwargs)
        if response.status_code == 204 or not response.content:
            return None, response
        try:
            return response.json(), response
        except ValueError as e:
            raise APIError(f"invalid JSON from {path}: {e}", f"{response.reason} ({response.status_code})",
                           response.status_code) from e

    def _list_page(self, path: str, offset: int, limit: int, **extra: Any) -> Tuple[List[Dict[str, Any]], int]:
        payload, response = self.call_json('GET', path, params={'offset': offset, 'limit': limit, **extra})
        items = payload or []
        total_header = response.headers.get('X-Total-Count')
        try:
            total = int(total_header) if total_header is not None else offset + len(items)
        except ValueError:
            raise APIError(f"invalid X-Total-Count header '{total_header}' from {path}")
        return items, total

    def list_downloads(self, offset: int, limit: int) -> Tuple[List[Download], int]:
        items, total = self._list_page('/downloads', offset, limit, includebreadcrumbs='false')
        return [Download.from_api(item) for item in items], total

    def list_torrents(self, offset: int, limit: int) -> Tuple[List[Torrent], int]:
        items, total = self._list_page('/torrents', offset, limit)
        return [Torrent.from_api(item) for item in items], total

    def torrent_info(self, torrent_id: str) -> Torrent:
        payload, _ = self.call_json('GET', f'/torrents/info/{torrent_id}')
        return Torrent.from_api(payload or {})

    def unrestrict_link(self, link: str) -> Download:
        payload, _ = self.call_json('POST', '/unrestrict/link', form={'link': link})
        return Download.from_api(payload or {})

    def add_magnet(self, torrent_hash: str) -> str:
        payload, _ = self.call_json('POST', '/torrents/addMagnet',
                                    form={'magnet': f"magnet:?xt=urn:btih:{torrent_hash}"})
        if not payload or not payload.get('id'):
            raise APIError(f"no job id returned when adding hash {torrent_hash}")
        return payload['id']

    def select_files(self, torrent_id: str, file_ids: List[int]) -> None:
        files = ','.join(str(i) for i in file_ids) if file_ids else 'all'
        self.call_json('POST', f'/torrents/selectFiles/{torrent_id}', form={'files': files})

    def delete_torrent(self, torrent_id: str) -> None:
        self.call_json('DELETE', f'/torrents/delete/{torrent_id}')

    def delete_download(self, download_id: str) -> None:
        self.call_json('DELETE', f'/downloads/delete/{download_id}')

    @retry(tries=2, delay=5, exceptions=(APIError,))
    def get_user(self) -> Dict[str, Any]:
        payload, _ = self.call_json('GET', '/user')
        user = payload or {}
        logging.info(f"REMOTE: Connected to real-debrid as '{user.get('username', '?')}' ({user.get('type', 'unknown')}).")
        return user

    def open_url(self, url: str, headers: Optional[Dict[str, str]] = None) -> requests.Response:
        return self._send('GET', url, headers=headers or {}, stream=True)
