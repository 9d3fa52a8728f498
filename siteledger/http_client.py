"""
HTTP Client for the SiteLedger SDK
Handles communication with a remote SiteLedger API
"""

import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic_core import to_jsonable_python

from siteledger.config import get_settings
from siteledger.errors import SiteLedgerError

logger = logging.getLogger(__name__)


class RemoteError(SiteLedgerError):
    """An error reported by the remote API, carrying its error code."""

    def __init__(self, error_code: str, message: str,
                 details: Optional[Dict[str, Any]] = None, status_code: Optional[int] = None):
        super().__init__(message, details)
        self.error_code = error_code
        self.status_code = status_code


class HTTPClient:
    """
    HTTP client for communicating with the SiteLedger API.

    Handles authentication headers, request formatting and error decoding:
    a structured error body (``error_code``, ``message``, ``details``) is
    raised as RemoteError so callers handle it like a local engine error.
    """

    def __init__(self, api_key: str, base_url: Optional[str] = None, timeout: Optional[float] = None):
        """
        Initialize HTTP client with API key authentication.

        Args:
            api_key: API key sent as a bearer token
            base_url: Base URL of the API (default: Settings.api_base_url)
            timeout: Request timeout in seconds (default: Settings.request_timeout_seconds)
        """
        if not api_key:
            raise ValueError("API key is required")

        settings = get_settings()
        self.api_key = api_key
        self.base_url = (base_url or settings.api_base_url).rstrip('/')
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self.session = requests.Session()

        # Set default headers
        self.session.headers.update({
            'Authorization': f'Bearer {api_key}',
            'Content-Type': 'application/json',
            'User-Agent': 'SiteLedger-SDK/0.1'
        })

    def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        """
        Make an HTTP request to the API.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            endpoint: API endpoint path (e.g., '/v1/accounts')
            data: Request body data (for POST/PUT)
            params: Query parameters (for GET)

        Returns:
            Decoded JSON response

        Raises:
            RemoteError: If the API answered with a structured error
            requests.HTTPError: If the API failed without one
            TimeoutError: If the request timed out
            ConnectionError: If the server could not be reached
        """
        url = f"{self.base_url}{endpoint}"
        logger.debug("API request", extra={"method": method, "url": url})

        try:
            response = self.session.request(
                method=method,
                url=url,
                json=to_jsonable_python(data) if data is not None else None,
                params=params,
                timeout=self.timeout
            )

            # Raise exception for HTTP errors
            response.raise_for_status()

            # Parse JSON response
            return response.json()

        except requests.exceptions.HTTPError as e:
            # Try to extract a structured error from the response
            try:
                error_data = e.response.json()
            except ValueError:
                raise e
            if isinstance(error_data, dict) and 'error_code' in error_data:
                raise RemoteError(
                    error_data['error_code'],
                    error_data.get('message', str(e)),
                    error_data.get('details') or {},
                    status_code=e.response.status_code,
                ) from e
            raise e

        except requests.exceptions.Timeout:
            raise TimeoutError(f"Request to {url} timed out")

        except requests.exceptions.ConnectionError:
            raise ConnectionError(f"Failed to connect to {url}. Is the server running?")

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Make a GET request."""
        return self._make_request('GET', endpoint, params=params)

    def post(self, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Any:
        """Make a POST request."""
        return self._make_request('POST', endpoint, data=data)

    def put(self, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Any:
        """Make a PUT request."""
        return self._make_request('PUT', endpoint, data=data)

    def delete(self, endpoint: str) -> Any:
        """Make a DELETE request."""
        return self._make_request('DELETE', endpoint)

    def ping(self) -> Dict[str, Any]:
        """
        Test API connection.

        Returns:
            Dict with service status and version
        """
        return self.get('/health')

    # ========== Groups & Accounts ==========

    def register_group(self, site_ids: List[str], group_id: Optional[str] = None,
                       name: Optional[str] = None) -> Dict[str, Any]:
        return self.post('/v1/groups', data={'group_id': group_id, 'name': name, 'site_ids': site_ids})

    def open_account(self, resource_id: str, group_id: str,
                     account_id: Optional[str] = None) -> Dict[str, Any]:
        return self.post('/v1/accounts', data={
            'resource_id': resource_id,
            'group_id': group_id,
            'account_id': account_id,
        })

    def get_account(self, account_id: str) -> Dict[str, Any]:
        return self.get(f'/v1/accounts/{account_id}')

    # ========== Inventory Ledger ==========

    def record_transaction(self, account_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Record a stock movement.

        Args:
            account_id: Ledger account ID
            data: Transaction fields (transaction_type, quantity, unit_cost,
                transaction_date, reference_id, site_id, paid_by_site_id)

        Returns:
            Operation result dict

        Example:
            ```python
            client.record_transaction("cement-g1", {
                "transaction_type": "purchase",
                "quantity": "100",
                "unit_cost": "350",
                "transaction_date": "2025-12-01",
            })
            ```
        """
        return self.post(f'/v1/accounts/{account_id}/transactions', data=data)

    def void_transaction(self, transaction_id: str) -> Dict[str, Any]:
        return self.post(f'/v1/transactions/{transaction_id}/void')

    def recompute_balance(self, account_id: str) -> Dict[str, Any]:
        return self.post(f'/v1/accounts/{account_id}/recompute')

    def merge_accounts(self, primary_id: str, duplicate_ids: List[str]) -> Dict[str, Any]:
        return self.post(f'/v1/accounts/{primary_id}/merge', data={'duplicate_ids': duplicate_ids})

    def consolidate(self, primary_id: str, duplicate_ids: List[str]) -> Dict[str, Any]:
        return self.post(f'/v1/accounts/{primary_id}/consolidate', data={'duplicate_ids': duplicate_ids})

    def inter_site_balances(self, account_id: str) -> List[Dict[str, Any]]:
        return self.get(f'/v1/accounts/{account_id}/inter-site-balances')

    # ========== Charges & Payments ==========

    def add_entry(self, account_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.post(f'/v1/accounts/{account_id}/entries', data=data)

    def add_group_entry(self, account_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.post(f'/v1/accounts/{account_id}/group-entries', data=data)

    def void_entry(self, entry_id: str) -> Dict[str, Any]:
        return self.post(f'/v1/entries/{entry_id}/void')

    def add_payment(self, account_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.post(f'/v1/accounts/{account_id}/payments', data=data)

    def cancel_payment(self, payment_id: str) -> Dict[str, Any]:
        return self.post(f'/v1/payments/{payment_id}/cancel')

    # ========== Waterfall ==========

    def rebuild(self, account_id: str, site_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Rebuild one scope of an account.

        Args:
            account_id: Ledger account ID
            site_id: Paying site, or None for the group scope

        Returns:
            Rebuild result dict (success, affected_count, violations, ...)
        """
        return self.post(f'/v1/accounts/{account_id}/rebuild', data={'site_id': site_id})

    def fifo_violations(self, account_id: str, site_id: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {'site_id': site_id} if site_id else None
        return self.get(f'/v1/accounts/{account_id}/fifo-violations', params=params)

    def close(self):
        """Close the HTTP session."""
        self.session.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close session."""
        self.close()
