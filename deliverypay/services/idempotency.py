"""
멱등성 가드 (IdempotencyGuard)

주문당 활성 결제 1건을 DB 부분 유니크 인덱스(uq_payments_active_order)로 보장합니다.
SELECT 후 INSERT 하지 않고, INSERT 자체를 원자적 점유(compare-and-insert)로 사용합니다.
여러 프로세스가 동시에 실행되어도 하나만 성공합니다.
"""

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deliverypay.models.payment import HistorySource, PaymentRecord, PaymentStatus
from deliverypay.services.payment_ledger import PaymentLedger
from deliverypay.utils.exceptions import DuplicatePaymentError
from deliverypay.utils.logging import get_logger
from deliverypay.utils.prometheus_metrics import duplicate_payments_total


logger = get_logger(__name__)


class IdempotencyGuard:
    """주문 결제 슬롯 점유"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], ledger: PaymentLedger):
        self.session_factory = session_factory
        self.ledger = ledger

    async def claim(self, record: PaymentRecord) -> PaymentRecord:
        """
        CREATED 상태의 결제 행을 삽입하고 즉시 커밋

        PG 호출 전에 커밋하므로, 동시에 들어온 두 번째 요청은 PG를 호출하기 전에 거절됩니다.

        Args:
            record: 아직 저장되지 않은 결제 레코드

        Returns:
            PaymentRecord: 저장된 레코드

        Raises:
            DuplicatePaymentError: 같은 주문에 활성 결제가 이미 있음
        """
        record.status = PaymentStatus.CREATED.value

        async with self.session_factory() as session:
            try:
                session.add(record)
                await session.flush()
                self.ledger.add_history(
                    session,
                    record,
                    from_status=None,
                    action="create",
                    source=HistorySource.API,
                    metadata={"provider": record.provider},
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                duplicate_payments_total.inc()
                logger.warning(
                    "중복 결제 요청 거절",
                    extra={"order_id": record.order_id, "provider": record.provider},
                )
                raise DuplicatePaymentError(record.order_id) from None

        logger.info(
            "결제 슬롯 점유",
            extra={"order_id": record.order_id, "record_id": str(record.id)},
        )
        return record
