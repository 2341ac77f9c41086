"""
OAuth 2.0 client-credentials token handling.
"""

import sys
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Tuple
import requests

from .constants import OAUTH_EXPIRY_BUFFER_SECONDS
from .errors import ODataRequestError


class OAuth2TokenProvider:
    """Fetches client-credentials tokens and caches them until shortly before expiry."""

    def __init__(self, session: Optional[requests.Session] = None, verbose: bool = False,
                 timeout: float = 30):
        self.session = session or requests.Session()
        self.verbose = verbose
        self.timeout = timeout
        # "token_url:client_id" -> (access_token, expires_at)
        self._cache: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} OAuth VERBOSE] {message}", file=sys.stderr)

    @staticmethod
    def _cache_key(token_url: str, client_id: str) -> str:
        return f"{token_url}:{client_id}"

    def get_token(self, token_url: str, client_id: str, client_secret: str,
                  scope: Optional[str] = None) -> str:
        key = self._cache_key(token_url, client_id)
        with self._lock:
            cached = self._cache.get(key)
            if cached and cached[1] > time.time():
                return cached[0]

        self._log_verbose(f"Requesting OAuth token from {token_url} for client {client_id}")
        data = {
            'grant_type': 'client_credentials',
            'client_id': client_id,
            'client_secret': client_secret,
        }
        if scope:
            data['scope'] = scope

        try:
            response = self.session.post(
                token_url,
                data=data,
                headers={'Accept': 'application/json'},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.HTTPError as e:
            print(f"ERROR: OAuth token request failed: {e}", file=sys.stderr)
            raise ODataRequestError(f"OAuth token request failed: {e}",
                                    status_code=e.response.status_code) from e
        except (requests.exceptions.RequestException, ValueError) as e:
            print(f"ERROR: OAuth token request failed: {e}", file=sys.stderr)
            raise ODataRequestError(f"OAuth token request failed: {e}") from e

        access_token = payload.get('access_token')
        if not access_token:
            raise ODataRequestError("OAuth token response did not contain an access_token")

        expires_in = int(payload.get('expires_in', 3600))
        expires_at = time.time() + max(expires_in - OAUTH_EXPIRY_BUFFER_SECONDS, 0)
        with self._lock:
            self._cache[key] = (access_token, expires_at)
        self._log_verbose(f"OAuth token cached, expires in {expires_in}s")
        return access_token

    def clear(self, token_url: Optional[str] = None, client_id: Optional[str] = None):
        """Drop one cached token, or all of them when no key is given."""
        with self._lock:
            if token_url and client_id:
                self._cache.pop(self._cache_key(token_url, client_id), None)
            else:
                self._cache.clear()
