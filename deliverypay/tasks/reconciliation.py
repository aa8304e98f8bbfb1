"""
결제 정합성 배치 작업

PG 호출과 원장 기록 사이에서 프로세스가 중단되면 결제가 CREATED/PENDING에 남습니다.
이 작업이 주기적으로 PG사 상태를 조회하여 원장을 맞춥니다.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional

from deliverypay.config import get_settings
from deliverypay.models.base import close_db, get_session_factory, utc_now
from deliverypay.services.container import ServiceContainer, build_services
from deliverypay.tasks import app
from deliverypay.utils.exceptions import (
    ConcurrencyConflictError,
    GatewayError,
    InvalidStateTransition,
    NotFoundError,
)
from deliverypay.utils.logging import get_logger


logger = get_logger(__name__)


async def sync_stale_payments_async(
    services: ServiceContainer,
    older_than_minutes: int,
    batch_size: int = 100,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    오래 머문 결제 동기화

    - PG 핸들이 있는 CREATED/PENDING 결제: sync_status()로 PG사 상태 반영
    - PG 핸들이 없는 CREATED 결제: FAILED로 정리하여 주문 슬롯 해제

    Args:
        services: 서비스 컨테이너
        older_than_minutes: 이 시간(분) 이상 갱신되지 않은 결제만 대상
        batch_size: 1회 처리 건수
        now: 기준 시각 (기본값: 현재)

    Returns:
        dict: 처리 건수 요약
    """
    cutoff = (now or utc_now()) - timedelta(minutes=older_than_minutes)
    async with services.session_factory() as session:
        stale = await services.ledger.find_stale(session, cutoff, limit=batch_size)
        orphaned = await services.ledger.find_orphaned(session, cutoff, limit=batch_size)

    summary = {"checked": len(stale), "changed": 0, "failed": 0, "expired": 0}

    for record in stale:
        try:
            updated = await services.orchestrator.sync_status(record.payment_id)
        except (GatewayError, InvalidStateTransition, ConcurrencyConflictError, NotFoundError) as e:
            summary["failed"] += 1
            logger.error(
                "결제 상태 동기화 실패",
                extra={"payment_id": record.payment_id, "error_code": e.error_code},
            )
            continue
        if updated.status != record.status:
            summary["changed"] += 1

    for record in orphaned:
        await services.orchestrator.expire_orphaned(record.id)
        summary["expired"] += 1

    logger.info("정합성 배치 완료", extra=summary)
    return summary


async def _run_sync_stale_payments() -> dict[str, Any]:
    settings = get_settings()
    services = build_services(settings, get_session_factory())
    try:
        return await sync_stale_payments_async(
            services,
            older_than_minutes=settings.STALE_PAYMENT_MINUTES,
            batch_size=settings.STALE_PAYMENT_BATCH_SIZE,
        )
    finally:
        await services.close()
        # 작업마다 이벤트 루프가 바뀌므로 커넥션 풀을 닫음
        await close_db()


@app.task(
    bind=True,
    name="deliverypay.tasks.reconciliation.sync_stale_payments",
    max_retries=1,
)
def sync_stale_payments(self):
    """
    오래 머문 CREATED/PENDING 결제 동기화

    Celery Beat 스케줄: 5분마다 실행

    Returns:
        Dict[str, Any]: 처리 결과
    """
    try:
        logger.info("[Celery Beat] Starting stale payment sync task")
        summary = asyncio.run(_run_sync_stale_payments())
        return {"success": True, **summary}
    except Exception as exc:
        logger.error(f"[FAIL] Failed to sync stale payments: {exc}")
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60)
        return {"success": False, "error": str(exc)}
