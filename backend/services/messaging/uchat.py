"""
uChat sub-flow transport.

Offers are delivered to riders on WhatsApp by triggering a uChat sub-flow for
the rider's subscriber id, which is their phone number without the ``+``.
"""

import logging
from typing import Any, Dict, Optional

import requests
from django.conf import settings

from common.utils.phone import strip_plus
from services.dispatch.exceptions import TransportError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.uchat.com.au/api"
SEND_SUB_FLOW_PATH = "/subscriber/send-sub-flow-by-user-id"


class UChatTransport:
    def __init__(
        self,
        api_key: str,
        sub_flow_ns: str,
        base_url: str = DEFAULT_BASE_URL,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.sub_flow_ns = sub_flow_ns
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> "UChatTransport":
        api_key = getattr(settings, "UCHAT_API_KEY", "")
        if not api_key:
            logger.warning("UCHAT_API_KEY is not set; rider notifications will be rejected")
        return cls(
            api_key=api_key,
            sub_flow_ns=getattr(settings, "UCHAT_SUB_FLOW_NS", ""),
            base_url=getattr(settings, "UCHAT_BASE_URL", DEFAULT_BASE_URL),
        )

    def format_recipient(self, phone: str) -> str:
        return strip_plus(phone)

    def build_payload(self, recipient: str, context: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "user_id": recipient,
            "sub_flow_ns": self.sub_flow_ns,
            "orderId": str(context.get("order_id", "")),
            "deliveryId": str(context.get("delivery_id", "")),
            "driverName": context.get("rider_name", ""),
        }

    def send(self, recipient: str, context: Dict[str, Any], timeout: float = 10.0) -> None:
        """
        Trigger the offer sub-flow for ``recipient``.

        Raises:
            TransportError: On connection problems, timeouts or non-2xx replies
        """
        url = f"{self.base_url}{SEND_SUB_FLOW_PATH}"
        try:
            response = self.session.post(
                url,
                json=self.build_payload(recipient, context),
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"uChat request failed: {exc}") from exc

        if not response.ok:
            raise TransportError(f"HTTP {response.status_code}: {response.reason}")

        logger.debug("uChat accepted sub-flow for %s: %s", recipient, response.status_code)
