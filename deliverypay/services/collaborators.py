"""
외부 협력 서비스 인터페이스 및 구현

결제 코어는 주문 테이블을 직접 쓰지 않고 주문 서비스 API를 호출합니다.
IP 평판은 FDS가 관리하는 Redis 블랙리스트를 조회하고,
보안 알림은 알림 채널 웹훅으로 전송합니다.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol

import httpx
import redis.asyncio as redis

from deliverypay.models.base import utc_now
from deliverypay.utils.exceptions import ExternalServiceException
from deliverypay.utils.logging import get_logger


logger = get_logger(__name__)


# 결제를 생성할 수 있는 주문 상태
PAYABLE_ORDER_STATUSES = frozenset({"pending", "payment_pending"})


@dataclass
class OrderItem:
    item_id: str
    price: int
    quantity: int = 1

    @property
    def subtotal(self) -> int:
        return self.price * self.quantity


@dataclass
class OrderSnapshot:
    """주문 서비스가 돌려주는 주문 요약"""

    order_id: str
    status: str
    total_amount: int
    user_id: Optional[str] = None
    order_name: str = "배달 주문"
    delivery_fee: int = 0
    items: list[OrderItem] = field(default_factory=list)

    @property
    def is_payable(self) -> bool:
        return self.status in PAYABLE_ORDER_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"


class AlertType(str, Enum):
    SECURITY_BREACH = "security_breach"
    FRAUD_DETECTION = "fraud_detection"
    SYSTEM_ERROR = "system_error"


class AlertPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@dataclass
class Alert:
    """보안 알림"""

    alert_type: AlertType
    priority: AlertPriority
    title: str
    message: str
    payment_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["alert_type"] = self.alert_type.value
        payload["priority"] = self.priority.value
        payload["created_at"] = self.created_at.isoformat()
        return payload


class OrderService(Protocol):
    async def get_order(self, order_id: str) -> Optional[OrderSnapshot]: ...

    async def update_payment_status(self, order_id: str, status: str) -> None: ...


class IpReputationService(Protocol):
    async def is_high_risk_ip(self, ip: str) -> bool: ...


class NotificationService(Protocol):
    async def send_alert(self, alert: Alert) -> None: ...


class HttpOrderService:
    """
    주문 서비스 HTTP 클라이언트

    GET   /v1/orders/{order_id}
    PATCH /v1/orders/{order_id}/payment-status
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def get_order(self, order_id: str) -> Optional[OrderSnapshot]:
        try:
            response = await self._client.get(f"/v1/orders/{order_id}")
        except httpx.HTTPError as e:
            raise ExternalServiceException("order_service", details={"error": str(e)}) from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ExternalServiceException(
                "order_service",
                details={"status_code": response.status_code},
            )

        data = response.json()
        return OrderSnapshot(
            order_id=str(data["id"]),
            status=data["status"],
            total_amount=int(data["total_amount"]),
            user_id=data.get("user_id"),
            order_name=data.get("order_name") or "배달 주문",
            delivery_fee=int(data.get("delivery_fee") or 0),
            items=[
                OrderItem(
                    item_id=str(item["id"]),
                    price=int(item["price"]),
                    quantity=int(item.get("quantity", 1)),
                )
                for item in data.get("items", [])
            ],
        )

    async def update_payment_status(self, order_id: str, status: str) -> None:
        try:
            response = await self._client.patch(
                f"/v1/orders/{order_id}/payment-status",
                json={"payment_status": status},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceException(
                "order_service",
                message="주문 결제 상태 갱신에 실패했습니다.",
                details={"order_id": order_id, "error": str(e)},
            ) from e


class RedisIpReputationService:
    """
    Redis 블랙리스트 기반 IP 평판 조회

    키 형식은 FDS 블랙리스트와 동일합니다: blacklist:ip:{ip}
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = "blacklist"):
        self.redis = redis_client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, socket_timeout: int = 5) -> "RedisIpReputationService":
        return cls(redis.from_url(url, socket_timeout=socket_timeout, decode_responses=True))

    async def close(self) -> None:
        await self.redis.aclose()

    def _get_key(self, ip: str) -> str:
        return f"{self.prefix}:ip:{ip}"

    async def is_high_risk_ip(self, ip: str) -> bool:
        try:
            return bool(await self.redis.exists(self._get_key(ip)))
        except redis.RedisError as e:
            raise ExternalServiceException("ip_reputation", details={"error": str(e)}) from e


class HttpNotificationService:
    """알림 채널 웹훅 전송 (URL이 없으면 로그만 남김)"""

    def __init__(
        self,
        webhook_url: Optional[str],
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def send_alert(self, alert: Alert) -> None:
        if not self.webhook_url:
            logger.warning(
                f"[ALERT] {alert.title}",
                extra={"alert_type": alert.alert_type.value, "priority": alert.priority.value},
            )
            return

        try:
            response = await self._client.post(self.webhook_url, json=alert.to_dict())
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceException(
                "notification",
                message="보안 알림 전송에 실패했습니다.",
                details={"error": str(e)},
            ) from e
