"""
CRM contacts API wrapper for contact synchronization.

Provides a high-level interface to the CRM contacts endpoints for:
- Listing contacts page by page with cursor pagination
- Searching contacts modified since a cutoff, oldest first
- Searching contacts by lifecycle stage
- Batch reading contact to company associations
- Exponential backoff retry logic for rate limits and server errors
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

from crm_sync.sync.contact import CONTACT_PROPERTIES, RemoteContact
from crm_sync.utils.retry import (
    DEFAULT_INITIAL_RETRY_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_RETRY_DELAY,
    RetryableError,
    retry_with_backoff,
)

DEFAULT_BASE_URL = "https://api.hubapi.com"

CONTACTS_PATH = "/crm/v3/objects/contacts"
SEARCH_PATH = "/crm/v3/objects/contacts/search"
ASSOCIATIONS_PATH = "/crm/v4/associations/contacts/companies/batch/read"

# Number of contacts per page
DEFAULT_PAGE_SIZE = 100

# Largest page the CRM accepts (search is capped lower than listing)
MAX_LIST_PAGE_SIZE = 100
MAX_SEARCH_PAGE_SIZE = 100

# Contact ids per association batch read
ASSOCIATIONS_BATCH_SIZE = 100

# Seconds to wait on HTTP 429 when no Retry-After header is sent
DEFAULT_RATE_LIMIT_WAIT = 5.0

DEFAULT_TIMEOUT = 30.0  # seconds

logger = logging.getLogger(__name__)


class CRMAPIError(Exception):
    """Raised when a CRM API operation fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientCRMError(CRMAPIError, RetryableError):
    """Raised for server errors, timeouts and connection failures."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        CRMAPIError.__init__(self, message, status_code)
        self.retry_after = retry_after


class RateLimitError(TransientCRMError):
    """Raised when the CRM answers 429; retry_after holds the requested wait."""

    pass


def parse_retry_after(value: Optional[str]) -> float:
    """
    Parse a Retry-After header given in seconds.

    Returns:
        Seconds to wait, DEFAULT_RATE_LIMIT_WAIT if missing or unparseable
    """
    if not value:
        return DEFAULT_RATE_LIMIT_WAIT
    try:
        seconds = float(value)
    except ValueError:
        return DEFAULT_RATE_LIMIT_WAIT
    return seconds if seconds >= 0 else DEFAULT_RATE_LIMIT_WAIT


@dataclass
class ContactPage:
    """
    One page of contacts.

    Attributes:
        contacts: Parsed contacts on this page
        next_cursor: Cursor for the next page, None when this is the last one
        total: Total matches reported by the search endpoint (None for listing)
    """

    contacts: list[RemoteContact] = field(default_factory=list)
    next_cursor: Optional[str] = None
    total: Optional[int] = None


class CRMClient:
    """
    CRM contacts API wrapper.

    Every contact traversal requests exactly CONTACT_PROPERTIES and returns one
    ContactPage per call; callers follow next_cursor until it is None.

    Attributes:
        access_token: Private app / OAuth access token
        base_url: API root URL
        session: requests.Session used for every call

    Usage:
        client = CRMClient(access_token)

        # Full listing
        page = client.list_contacts_page()
        while page.next_cursor:
            page = client.list_contacts_page(after=page.next_cursor)

        # Modified since a cutoff (epoch milliseconds)
        page = client.search_contacts_modified_since(1710460800000)

        # Customers only, then their companies
        page = client.search_contacts_by_lifecycle_stage(["customer", "active"])
        companies = client.get_company_associations(
            [c.contact_id for c in page.contacts]
        )
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = DEFAULT_BASE_URL,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_ATTEMPTS,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the CRM client.

        Args:
            access_token: Bearer token with contacts read scope
            base_url: API root URL (default https://api.hubapi.com)
            page_size: Contacts per page (default 100, API max is 100)
            timeout: Per-request timeout in seconds
            max_retries: Attempts per request, including the first (default 3)
            initial_retry_delay: Initial backoff delay in seconds (default 1.0)
            max_retry_delay: Maximum backoff delay in seconds (default 60.0)
            session: Optional pre-configured requests.Session
        """
        if not access_token:
            raise CRMAPIError("CRM access token is required")

        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.page_size = max(1, min(page_size, MAX_LIST_PAGE_SIZE))
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay

        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    def _send(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Send a single request and classify the outcome.

        Raises:
            RateLimitError: On HTTP 429
            TransientCRMError: On 5xx, timeouts and connection failures
            CRMAPIError: On any other non-2xx response or an invalid body
        """
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, params=params, json=json_body, timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientCRMError(f"{method} {path} failed: {e}") from e
        except requests.RequestException as e:
            raise CRMAPIError(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if status == 429:
            wait = parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimitError(
                f"Rate limited on {method} {path}", status_code=429, retry_after=wait
            )
        if status >= 500:
            raise TransientCRMError(
                f"Server error {status} on {method} {path}", status_code=status
            )
        if status >= 400:
            raise CRMAPIError(
                f"{method} {path} failed with status {status}: "
                f"{response.text[:500]}",
                status_code=status,
            )

        try:
            body: dict[str, Any] = response.json()
        except ValueError as e:
            raise CRMAPIError(f"Invalid JSON from {method} {path}") from e
        return body

    def _request(
        self,
        method: str,
        path: str,
        operation_name: str,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Send a request, retrying rate limits and transient failures."""
        return retry_with_backoff(
            lambda: self._send(method, path, params=params, json_body=json_body),
            operation_name,
            max_attempts=self.max_retries,
            initial_delay=self.initial_retry_delay,
            max_delay=self.max_retry_delay,
            retry_on=(TransientCRMError,),
        )

    @staticmethod
    def _parse_page(response: dict[str, Any]) -> ContactPage:
        contacts: list[RemoteContact] = []
        for record in response.get("results", []):
            try:
                contacts.append(RemoteContact.from_api_response(record))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Failed to parse contact: {e}")
                continue

        paging = response.get("paging") or {}
        next_cursor = (paging.get("next") or {}).get("after")
        total = response.get("total")

        return ContactPage(
            contacts=contacts,
            next_cursor=str(next_cursor) if next_cursor else None,
            total=int(total) if total is not None else None,
        )

    def list_contacts_page(self, after: Optional[str] = None) -> ContactPage:
        """
        Fetch one page from the unfiltered contact listing.

        Args:
            after: Cursor returned by the previous page

        Returns:
            ContactPage (total is None for listings)

        Raises:
            CRMAPIError: If the request fails after retries
        """
        params: dict[str, Any] = {
            "limit": self.page_size,
            "properties": ",".join(CONTACT_PROPERTIES),
            "archived": "false",
        }
        if after:
            params["after"] = after

        logger.debug(f"Listing contacts page (after={after})")
        response = self._request("GET", CONTACTS_PATH, "list_contacts", params=params)
        return self._parse_page(response)

    def search_contacts_modified_since(
        self, since_ms: int, after: Optional[str] = None
    ) -> ContactPage:
        """
        Fetch one page of contacts modified at or after a cutoff.

        Results are sorted by last modification, oldest first.

        Args:
            since_ms: Cutoff as epoch milliseconds
            after: Cursor returned by the previous page

        Returns:
            ContactPage with the total number of matches

        Raises:
            CRMAPIError: If the request fails after retries
        """
        body: dict[str, Any] = {
            "filterGroups": [
                {
                    "filters": [
                        {
                            "propertyName": "lastmodifieddate",
                            "operator": "GTE",
                            "value": str(since_ms),
                        }
                    ]
                }
            ],
            "sorts": [{"propertyName": "lastmodifieddate", "direction": "ASCENDING"}],
            "properties": list(CONTACT_PROPERTIES),
            "limit": min(self.page_size, MAX_SEARCH_PAGE_SIZE),
        }
        if after:
            body["after"] = after

        logger.debug(f"Searching contacts modified since {since_ms} (after={after})")
        response = self._request(
            "POST", SEARCH_PATH, "search_contacts", json_body=body
        )
        return self._parse_page(response)

    def search_contacts_by_lifecycle_stage(
        self, stages: Sequence[str], after: Optional[str] = None
    ) -> ContactPage:
        """
        Fetch one page of contacts whose lifecycle stage is one of stages.

        Results are sorted by creation date, oldest first, so contacts
        created while the run pages through do not shift earlier pages.

        Args:
            stages: Lifecycle stage codes to match, e.g. ['customer', 'dnc']
            after: Cursor returned by the previous page

        Returns:
            ContactPage with the total number of matches

        Raises:
            CRMAPIError: If the request fails after retries
        """
        body: dict[str, Any] = {
            "filterGroups": [
                {
                    "filters": [
                        {
                            "propertyName": "lifecyclestage",
                            "operator": "IN",
                            "values": list(stages),
                        }
                    ]
                }
            ],
            "sorts": [{"propertyName": "createdate", "direction": "ASCENDING"}],
            "properties": list(CONTACT_PROPERTIES),
            "limit": min(self.page_size, MAX_SEARCH_PAGE_SIZE),
        }
        if after:
            body["after"] = after

        logger.debug(f"Searching contacts in stages {list(stages)} (after={after})")
        response = self._request(
            "POST", SEARCH_PATH, "search_customers", json_body=body
        )
        return self._parse_page(response)

    def get_company_associations(self, contact_ids: Sequence[str]) -> dict[str, str]:
        """
        Look up the primary company of each contact.

        Ids are sent in batches of ASSOCIATIONS_BATCH_SIZE. A contact with
        several companies is mapped to the first one the CRM lists; contacts
        without a company are left out of the result.

        Args:
            contact_ids: CRM contact ids

        Returns:
            Dictionary mapping contact id to company id

        Raises:
            CRMAPIError: If a batch request fails after retries
        """
        companies: dict[str, str] = {}
        ids = [str(contact_id) for contact_id in contact_ids]

        for start in range(0, len(ids), ASSOCIATIONS_BATCH_SIZE):
            batch = ids[start : start + ASSOCIATIONS_BATCH_SIZE]
            body = {"inputs": [{"id": contact_id} for contact_id in batch]}
            response = self._request(
                "POST", ASSOCIATIONS_PATH, "read_company_associations", json_body=body
            )

            for result in response.get("results", []):
                contact_id = (result.get("from") or {}).get("id")
                targets = result.get("to") or []
                if not contact_id or not targets:
                    continue
                company_id = targets[0].get("toObjectId")
                if company_id is not None:
                    companies[str(contact_id)] = str(company_id)

        logger.debug(
            f"Resolved companies for {len(companies)} of {len(ids)} contact(s)"
        )
        return companies

    def check_connection(self) -> bool:
        """
        Verify the token works by fetching a single contact.

        Returns:
            True if the CRM answered successfully

        Raises:
            CRMAPIError: If the request fails
        """
        self._send("GET", CONTACTS_PATH, params={"limit": 1})
        return True

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()
