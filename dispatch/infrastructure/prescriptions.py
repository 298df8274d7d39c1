import httpx
from typing import Optional
from shared.core import get_logger

logger = get_logger(__name__)

PENDING = "pending"

class PrescriptionClient:
    """Reads prescription status from the prescription service."""

    def __init__(self, base_url: str, timeout: float = 5.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def get_status(self, prescription_id: str) -> Optional[str]:
        """Current status, or None when the service cannot tell us."""
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(f"{self.base_url}/prescriptions/{prescription_id}")
                if response.status_code == 200:
                    return response.json().get("status")
                logger.warning(
                    "Prescription lookup failed",
                    extra={'extra_fields': {'prescription_id': prescription_id, 'status_code': response.status_code}},
                )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                f"Prescription service unreachable: {e}",
                extra={'extra_fields': {'prescription_id': prescription_id}},
            )
        return None
