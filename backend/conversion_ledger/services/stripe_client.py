"""Minimal Stripe REST client.

WHAT:
    Resolves customer references to emails and lists recent events.

WHY:
    - Subscription events only embed a customer id; the email lives on the
      Customer object
    - Reconciliation replays recent events that a webhook may have missed

HOW:
    Plain httpx calls against https://api.stripe.com/v1 with the secret key
    as Bearer token. Every call carries its own timeout.

REFERENCES:
    - https://docs.stripe.com/api/customers/retrieve
    - https://docs.stripe.com/api/events/list
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..exceptions import CustomerLookupError, StripeAPIError

logger = logging.getLogger(__name__)


class StripeClient:
    """Async client for the few Stripe endpoints the ledger needs.

    Usage:
        ```python
        client = StripeClient(api_key="sk_test_...")
        customer = await client.retrieve_customer("cus_123")
        ```
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.stripe.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_key: Stripe secret key (sk_...)
            base_url: API root, overridable for tests
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _get(self, path: str, params: Optional[Any] = None) -> httpx.Response:
        if not self.api_key:
            raise StripeAPIError("STRIPE_SECRET_KEY not configured")

        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                return await client.get(
                    f"{self.base_url}{path}",
                    params=params,
                    headers=headers,
                    timeout=self.timeout,
                )
        except httpx.RequestError as e:
            logger.error(f"[STRIPE] Network error on {path}: {e}")
            raise StripeAPIError(f"Network error calling Stripe: {e}") from e

    async def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a customer by id.

        Returns:
            The customer object, or None when Stripe reports it deleted or unknown

        Raises:
            CustomerLookupError: Network failure or any other API error
        """
        try:
            response = await self._get(f"/v1/customers/{customer_id}")
        except StripeAPIError as e:
            raise CustomerLookupError(str(e)) from e

        if response.status_code == 404:
            logger.warning(f"[STRIPE] Customer {customer_id} not found")
            return None

        if response.status_code != 200:
            logger.error(
                f"[STRIPE] Customer lookup failed: {response.status_code}",
                extra={"customer_id": customer_id, "body": response.text[:500]},
            )
            raise CustomerLookupError(
                f"Stripe customer lookup failed with status {response.status_code}"
            )

        customer = response.json()
        if customer.get("deleted"):
            return None
        return customer

    async def list_events(self, types: Sequence[str], limit: int = 100) -> List[Dict[str, Any]]:
        """List the most recent events of the given types (newest first).

        Raises:
            StripeAPIError: Network failure or non-200 response
        """
        params = [("limit", str(limit))] + [("types[]", t) for t in types]
        response = await self._get("/v1/events", params=params)

        if response.status_code != 200:
            logger.error(f"[STRIPE] Event listing failed: {response.status_code} {response.text[:500]}")
            raise StripeAPIError(f"Stripe event listing failed with status {response.status_code}")

        return response.json().get("data", [])
