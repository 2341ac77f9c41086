"""
HTTP client for one configured OData system, with authentication and CSRF token handling.
"""

import json
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional
import requests

from .auth import OAuth2TokenProvider
from .config import AuthType, SystemConfig, SystemType
from .constants import SAP_CATALOG_PATH, USER_AGENT
from .errors import ODataRequestError
from .query_builder import ODataRequest

MODIFYING_METHODS = ('POST', 'PUT', 'MERGE', 'PATCH', 'DELETE')


class ODataClient:
    """Client for the OData services of a single system."""

    def __init__(self, system: SystemConfig, token_provider: Optional[OAuth2TokenProvider] = None,
                 verbose: bool = False, session: Optional[requests.Session] = None):
        self.system = system
        self.verbose = verbose
        self.timeout = system.timeout / 1000.0
        self.session = session or requests.Session()
        self.token_provider = token_provider or OAuth2TokenProvider(verbose=verbose)
        self.csrf_token: Optional[str] = None

        # Standard headers, always prefer JSON
        self.session.headers.update({
            'Accept': 'application/json',
            'User-Agent': USER_AGENT,
            'Content-Type': 'application/json',
        })
        self.session.headers.update(system.custom_headers)
        self.session.verify = system.validate_ssl

        if system.auth_type == AuthType.BASIC and system.basic_auth:
            self.session.auth = (system.basic_auth.username, system.basic_auth.password)
            if system.basic_auth.client:
                self.session.headers['sap-client'] = system.basic_auth.client

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Client VERBOSE] {message}", file=sys.stderr)

    def _auth_headers(self) -> Dict[str, str]:
        oauth2 = self.system.oauth2
        if self.system.auth_type == AuthType.OAUTH2 and oauth2:
            token = self.token_provider.get_token(
                oauth2.token_url, oauth2.client_id, oauth2.client_secret, oauth2.scope)
            return {'Authorization': f"Bearer {token}"}
        return {}

    def _fetch_csrf_token(self, service_url: str) -> bool:
        """Fetch CSRF token required by SAP OData services for modifying requests."""
        self.csrf_token = None
        headers = {'X-CSRF-Token': 'Fetch'}
        headers.update(self._auth_headers())
        try:
            response = self.session.get(service_url.rstrip('/') + '/', headers=headers,
                                        timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            self._log_verbose(f"Failed to fetch CSRF token: {e}")
            return False

        token = response.headers.get('x-csrf-token')
        if token and token.lower() not in ('fetch', 'required'):
            self.csrf_token = token
            self._log_verbose(f"CSRF token fetched successfully: {token[:20]}...")
            return True
        self._log_verbose(f"No valid CSRF token from {service_url} (got: '{token}')")
        return False

    @staticmethod
    def _is_csrf_failure(response: requests.Response) -> bool:
        return response.status_code == 403 and (
            response.headers.get('x-csrf-token', '').lower() == 'required'
            or 'csrf' in response.text.lower()
        )

    def _make_request(self, method: str, url: str, service_url: Optional[str] = None,
                      **kwargs) -> requests.Response:
        """Send a request, handling OAuth token expiry and CSRF token refetch."""
        needs_csrf = bool(self.system.enable_csrf and service_url and method.upper() in MODIFYING_METHODS)
        if needs_csrf and not self.csrf_token:
            self._fetch_csrf_token(service_url)

        extra_headers = kwargs.pop('headers', {})

        def send() -> requests.Response:
            headers = dict(extra_headers)
            headers.update(self._auth_headers())
            if needs_csrf and self.csrf_token:
                headers['X-CSRF-Token'] = self.csrf_token
            self._log_verbose(f"Requesting: {method} {url}")
            return self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)

        try:
            response = send()
            if response.status_code == 401 and self.system.auth_type == AuthType.OAUTH2:
                self._log_verbose("Got 401, clearing cached OAuth token and retrying once...")
                oauth2 = self.system.oauth2
                self.token_provider.clear(oauth2.token_url if oauth2 else None,
                                          oauth2.client_id if oauth2 else None)
                response = send()
            if needs_csrf and self._is_csrf_failure(response):
                self._log_verbose("CSRF token validation failed, attempting to refetch...")
                if self._fetch_csrf_token(service_url):
                    response = send()
        except requests.exceptions.RequestException as e:
            print(f"ERROR: Request {method} {url} failed: {e}", file=sys.stderr)
            raise ODataRequestError(f"Request failed: {e}", system_id=self.system.id,
                                    service_url=service_url) from e
        return response

    @staticmethod
    def _parse_odata_error(response: requests.Response) -> str:
        """Attempt to extract a meaningful error message from OData error response."""
        try:
            data = response.json()
        except ValueError:
            text = response.text.strip()
            return text[:500] if text else f"HTTP {response.status_code}: {response.reason}"
        if isinstance(data, dict) and isinstance(data.get('error'), dict):
            message = data['error'].get('message')
            if isinstance(message, dict) and 'value' in message:
                return str(message['value'])
            if isinstance(message, str):
                return message
            return json.dumps(data['error'])[:1000]
        return f"HTTP {response.status_code}: {response.reason}"

    def _raise_for_status(self, response: requests.Response, service_url: Optional[str]):
        if response.status_code < 400:
            return
        message = self._parse_odata_error(response)
        print(f"ERROR: OData HTTP Error: {response.status_code} {response.reason}. Message: {message}",
              file=sys.stderr)
        raise ODataRequestError(f"OData request failed ({response.status_code}): {message}",
                                status_code=response.status_code, system_id=self.system.id,
                                service_url=service_url)

    def fetch_metadata(self, service_url: str) -> bytes:
        """Download the raw $metadata document of a service."""
        url = f"{service_url.rstrip('/')}/$metadata"
        response = self._make_request('GET', url, service_url=service_url,
                                      headers={'Accept': 'application/xml, text/xml'})
        self._raise_for_status(response, service_url)
        self._log_verbose(f"Metadata fetched from {url} ({len(response.content)} bytes).")
        return response.content

    def execute(self, service_url: str, request: ODataRequest) -> Any:
        """Send a built request to a service and return the decoded payload."""
        url = request.url(service_url)
        kwargs = {}
        if request.body is not None:
            kwargs['json'] = request.body
        response = self._make_request(request.method, url, service_url=service_url, **kwargs)
        self._raise_for_status(response, service_url)

        if response.status_code == 204 or not response.content:
            return {"message": "Operation successful (No content returned)."}
        try:
            return response.json()
        except ValueError:
            # $count and $format=xml answer with plain text
            return response.text

    def close(self):
        self.session.close()

    def test_connection(self) -> bool:
        try:
            response = self._make_request('GET', self.system.base_url + '/')
        except ODataRequestError:
            return False
        return response.status_code < 400

    def discover_services(self) -> List[Dict[str, Any]]:
        """List the OData services a system offers.

        Explicitly configured services win. SAP on-premise systems are asked
        through their backend catalog; everything else is treated as a single
        service rooted at the base URL.
        """
        if self.system.services:
            return [{"id": url.rstrip('/').rsplit('/', 1)[-1], "name": url.rstrip('/').rsplit('/', 1)[-1],
                     "url": url} for url in self.system.service_urls()]

        if self.system.type == SystemType.SAP_ONPREMISE:
            services = self._discover_sap_services()
            if services:
                return services

        return [{"id": self.system.id, "name": self.system.name, "title": self.system.description,
                 "url": self.system.base_url}]

    def _discover_sap_services(self) -> List[Dict[str, Any]]:
        catalog_url = self.system.discovery_url or SAP_CATALOG_PATH
        if not catalog_url.startswith(('http://', 'https://')):
            catalog_url = f"{self.system.base_url}/{catalog_url.lstrip('/')}"
        try:
            response = self._make_request('GET', catalog_url)
            self._raise_for_status(response, None)
            payload = response.json()
        except (ODataRequestError, ValueError) as e:
            print(f"ERROR: Service catalog not accessible for {self.system.id}: {e}", file=sys.stderr)
            return []

        results = payload.get('d', {}).get('results', []) if isinstance(payload, dict) else []
        services = []
        for entry in results:
            service_id = entry.get('ServiceId') or entry.get('Name')
            if not service_id:
                continue
            services.append({
                "id": service_id,
                "name": service_id,
                "title": entry.get('Title') or entry.get('Description'),
                "version": entry.get('Version'),
                "url": (entry.get('ServiceUrl') or f"{self.system.base_url}/{service_id}").rstrip('/'),
            })
        self._log_verbose(f"Discovered {len(services)} services in catalog {catalog_url}")
        return services
