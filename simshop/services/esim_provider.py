"""
eSIM Provider Clients

Wraps the provisioning provider's open API:
- Package lookup (price in provider units, 1 unit = 1/10,000 USD)
- Order submission and order query
- Profile suspend / unsuspend / revoke
- Batched usage query

Two implementations share one interface:
- RealProvisioningClient talks HTTP with signed requests
- MockProvisioningClient returns synthetic responses so non-production
  environments never consume provider inventory

select_provisioning_client() picks one per call from the mock-mode flag.
"""

import hashlib
import hmac
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from simshop.config import settings

logger = logging.getLogger(__name__)


class ProviderAPIError(Exception):
    """Raised when the provider is unreachable or rejects a request."""

    def __init__(self, status_code: int, message: str, error_code: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.error_code = error_code
        super().__init__(f"Provider API Error ({status_code}): {message}")


# ==================== Response types ====================

@dataclass
class ProviderPackage:
    code: str
    name: str
    price_units: int
    volume_bytes: Optional[int] = None
    duration_days: Optional[int] = None


@dataclass
class ProviderOrderResult:
    order_no: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderProfile:
    esim_tran_no: Optional[str]
    iccid: Optional[str]
    qr_code_url: Optional[str] = None
    activation_code: Optional[str] = None
    smdp_status: Optional[str] = None
    status: Optional[str] = None
    capacity_bytes: Optional[int] = None
    used_bytes: Optional[int] = None
    expires_at: Optional[datetime] = None
    order_no: Optional[str] = None


@dataclass
class UsageItem:
    esim_tran_no: str
    used_bytes: int
    total_bytes: Optional[int] = None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable provider timestamp: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_profile(item: Dict[str, Any]) -> ProviderProfile:
    return ProviderProfile(
        esim_tran_no=item.get("esimTranNo"),
        iccid=item.get("iccid"),
        qr_code_url=item.get("qrCodeUrl"),
        activation_code=item.get("ac"),
        smdp_status=item.get("smdpStatus"),
        status=item.get("esimStatus"),
        capacity_bytes=item.get("totalVolume"),
        used_bytes=item.get("orderUsage"),
        expires_at=_parse_datetime(item.get("expiredTime")),
        order_no=item.get("orderNo"),
    )


# ==================== Interface ====================

class ProvisioningClient(ABC):
    """Provider operations the engine depends on. Every call may fail."""

    name = "abstract"

    @abstractmethod
    async def get_package(self, plan_code: str) -> Optional[ProviderPackage]:
        pass

    @abstractmethod
    async def order(self, transaction_id: str, plan_code: str, price_units: int) -> ProviderOrderResult:
        pass

    @abstractmethod
    async def query(self, order_no: str) -> List[ProviderProfile]:
        """Profiles for a provider order; empty while still allocating."""
        pass

    @abstractmethod
    async def suspend(self, esim_tran_no: str) -> bool:
        pass

    @abstractmethod
    async def unsuspend(self, esim_tran_no: str) -> bool:
        pass

    @abstractmethod
    async def revoke(self, esim_tran_no: str) -> bool:
        pass

    @abstractmethod
    async def usage(self, esim_tran_nos: List[str]) -> List[UsageItem]:
        pass


# ==================== Real client ====================

class RealProvisioningClient(ProvisioningClient):
    """
    HTTP client for the provider API.

    Requests are signed with HMAC-SHA256 over
    timestamp + request id + access code + body.
    """

    name = "real"

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_code: Optional[str] = None,
        secret_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.PROVIDER_API_URL).rstrip("/")
        self.access_code = access_code if access_code is not None else settings.PROVIDER_ACCESS_CODE
        self.secret_key = secret_key if secret_key is not None else settings.PROVIDER_SECRET_KEY
        self.timeout = timeout or settings.PROVIDER_HTTP_TIMEOUT
        self._transport = transport

    def _headers(self, body: str) -> Dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        request_id = uuid.uuid4().hex
        payload = f"{timestamp}{request_id}{self.access_code}{body}"
        signature = hmac.new(
            self.secret_key.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return {
            "Content-Type": "application/json",
            "RT-AccessCode": self.access_code,
            "RT-RequestID": request_id,
            "RT-Timestamp": timestamp,
            "RT-Signature": signature,
        }

    async def _post(self, endpoint: str, data: Dict[str, Any]) -> Dict[str, Any]:
        body = json.dumps(data, separators=(",", ":"))
        url = f"{self.base_url}{endpoint}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, content=body, headers=self._headers(body))
        except httpx.TimeoutException:
            raise ProviderAPIError(504, f"Timeout calling {endpoint}")
        except httpx.HTTPError as e:
            raise ProviderAPIError(503, f"Network error calling {endpoint}: {e}")

        if response.status_code >= 400:
            raise ProviderAPIError(response.status_code, response.text[:500] or "HTTP error")

        try:
            result = response.json()
        except ValueError:
            raise ProviderAPIError(502, f"Non-JSON response from {endpoint}")

        if not result.get("success", False):
            raise ProviderAPIError(
                400,
                result.get("errorMsg") or "Request rejected",
                error_code=result.get("errorCode"),
            )
        return result.get("obj") or {}

    async def get_package(self, plan_code: str) -> Optional[ProviderPackage]:
        obj = await self._post("/package/list", {"packageCode": plan_code, "locationCode": ""})
        packages = obj.get("packageList") or []
        if not packages:
            return None
        pkg = packages[0]
        return ProviderPackage(
            code=pkg.get("packageCode", plan_code),
            name=pkg.get("name", plan_code),
            price_units=int(pkg.get("price") or 0),
            volume_bytes=pkg.get("volume"),
            duration_days=pkg.get("duration"),
        )

    async def order(self, transaction_id: str, plan_code: str, price_units: int) -> ProviderOrderResult:
        obj = await self._post("/esim/order", {
            "transactionId": transaction_id,
            "packageInfoList": [
                {"packageCode": plan_code, "count": 1, "price": price_units},
            ],
        })
        return ProviderOrderResult(order_no=obj.get("orderNo"), raw=obj)

    async def query(self, order_no: str) -> List[ProviderProfile]:
        obj = await self._post("/esim/query", {
            "orderNo": order_no,
            "pager": {"pageNum": 1, "pageSize": 50},
        })
        return [_parse_profile(item) for item in obj.get("esimList") or []]

    async def suspend(self, esim_tran_no: str) -> bool:
        await self._post("/esim/suspend", {"esimTranNo": esim_tran_no})
        return True

    async def unsuspend(self, esim_tran_no: str) -> bool:
        await self._post("/esim/unsuspend", {"esimTranNo": esim_tran_no})
        return True

    async def revoke(self, esim_tran_no: str) -> bool:
        await self._post("/esim/revoke", {"esimTranNo": esim_tran_no})
        return True

    async def usage(self, esim_tran_nos: List[str]) -> List[UsageItem]:
        obj = await self._post("/esim/usage/query", {"esimTranNoList": esim_tran_nos})
        return [
            UsageItem(
                esim_tran_no=item.get("esimTranNo"),
                used_bytes=int(item.get("dataUsage") or 0),
                total_bytes=item.get("totalData"),
            )
            for item in obj.get("esimUsageList") or []
            if item.get("esimTranNo")
        ]


# ==================== Mock client ====================

class MockProvisioningClient(ProvisioningClient):
    """
    Synthetic responses for order, query and lifecycle calls.

    Package lookups are read-only, so they go to `catalog` when one is given;
    without it a flat $1.00 package is returned for any code.
    """

    name = "mock"
    MOCK_VOLUME_BYTES = 1024 ** 3

    def __init__(self, catalog: Optional[ProvisioningClient] = None):
        self.catalog = catalog

    async def get_package(self, plan_code: str) -> Optional[ProviderPackage]:
        if self.catalog is not None:
            return await self.catalog.get_package(plan_code)
        return ProviderPackage(
            code=plan_code,
            name=f"Mock {plan_code}",
            price_units=10000,
            volume_bytes=self.MOCK_VOLUME_BYTES,
            duration_days=30,
        )

    async def order(self, transaction_id: str, plan_code: str, price_units: int) -> ProviderOrderResult:
        order_no = f"MOCK-{uuid.uuid4().hex[:16].upper()}"
        logger.info(f"[MOCK] order {transaction_id} -> {order_no}")
        return ProviderOrderResult(order_no=order_no, raw={"orderNo": order_no})

    async def query(self, order_no: str) -> List[ProviderProfile]:
        logger.info(f"[MOCK] query {order_no}")
        suffix = order_no.replace("MOCK-", "")
        return [
            ProviderProfile(
                esim_tran_no=f"MOCK-TRAN-{suffix}",
                iccid=f"MOCK-ICCID-{suffix}",
                qr_code_url="https://mock.qr",
                activation_code="MOCK-AC",
                smdp_status="RELEASED",
                status="GOT_RESOURCE",
                capacity_bytes=self.MOCK_VOLUME_BYTES,
                used_bytes=0,
                expires_at=datetime.now(timezone.utc) + timedelta(days=30),
                order_no=order_no,
            )
        ]

    async def suspend(self, esim_tran_no: str) -> bool:
        return True

    async def unsuspend(self, esim_tran_no: str) -> bool:
        return True

    async def revoke(self, esim_tran_no: str) -> bool:
        return True

    async def usage(self, esim_tran_nos: List[str]) -> List[UsageItem]:
        return [UsageItem(esim_tran_no=t, used_bytes=0, total_bytes=self.MOCK_VOLUME_BYTES) for t in esim_tran_nos]


def select_provisioning_client(
    mock_mode: bool,
    real: ProvisioningClient,
    mock: ProvisioningClient,
) -> ProvisioningClient:
    return mock if mock_mode else real
