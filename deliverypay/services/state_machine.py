"""
결제 상태 머신

동기 승인/취소 경로와 웹훅/동기화 경로가 모두 이 전이표 하나만 사용합니다.

    CREATED           -> PENDING, FAILED
    PENDING           -> CONFIRMED, FAILED
    CONFIRMED         -> CANCELLED, PARTIAL_CANCELLED, REFUNDED
    PARTIAL_CANCELLED -> PARTIAL_CANCELLED, CANCELLED, REFUNDED

FAILED, CANCELLED, REFUNDED 는 종료 상태입니다.
"""

from collections import deque
from typing import Optional

from deliverypay.models.payment import PaymentStatus
from deliverypay.utils.exceptions import InvalidStateTransition


ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.CREATED: frozenset({PaymentStatus.PENDING, PaymentStatus.FAILED}),
    PaymentStatus.PENDING: frozenset({PaymentStatus.CONFIRMED, PaymentStatus.FAILED}),
    PaymentStatus.CONFIRMED: frozenset(
        {
            PaymentStatus.CANCELLED,
            PaymentStatus.PARTIAL_CANCELLED,
            PaymentStatus.REFUNDED,
        }
    ),
    # 부분 취소 후 추가 부분 취소 / 잔액 전체 취소
    PaymentStatus.PARTIAL_CANCELLED: frozenset(
        {
            PaymentStatus.PARTIAL_CANCELLED,
            PaymentStatus.CANCELLED,
            PaymentStatus.REFUNDED,
        }
    ),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    """current -> target 전이가 전이표에 있는지 여부"""
    return PaymentStatus(target) in ALLOWED_TRANSITIONS[PaymentStatus(current)]


def assert_transition(
    current: PaymentStatus,
    target: PaymentStatus,
    payment_id: Optional[str] = None,
) -> None:
    """
    전이 검증

    Raises:
        InvalidStateTransition: 전이표에 없는 전이
    """
    if not can_transition(current, target):
        raise InvalidStateTransition(
            PaymentStatus(current).value,
            PaymentStatus(target).value,
            payment_id=payment_id,
        )


def is_terminal(status: PaymentStatus) -> bool:
    return PaymentStatus(status) in TERMINAL_STATUSES


def plan_path(current: PaymentStatus, target: PaymentStatus) -> Optional[list[PaymentStatus]]:
    """
    current에서 target까지 거쳐야 할 상태 목록 (BFS 최단 경로)

    예: plan_path(CREATED, CONFIRMED) == [PENDING, CONFIRMED]

    Returns:
        도달 가능하면 current를 제외한 상태 목록, current == target이면 빈 목록,
        도달 불가능하면 None
    """
    current = PaymentStatus(current)
    target = PaymentStatus(target)
    if current == target:
        return []

    previous: dict[PaymentStatus, PaymentStatus] = {}
    queue = deque([current])
    seen = {current}

    while queue:
        node = queue.popleft()
        for nxt in sorted(ALLOWED_TRANSITIONS[node], key=lambda s: s.value):
            if nxt in seen:
                continue
            previous[nxt] = node
            if nxt == target:
                path = [nxt]
                while path[-1] != current and previous[path[-1]] != current:
                    path.append(previous[path[-1]])
                return list(reversed(path))
            seen.add(nxt)
            queue.append(nxt)

    return None


def is_behind(target: PaymentStatus, current: PaymentStatus) -> bool:
    """
    target이 current보다 이전 단계인지 여부

    늦게 도착한 웹훅(예: 이미 CONFIRMED인데 PENDING 알림)을 무시할 때 사용합니다.
    """
    target = PaymentStatus(target)
    current = PaymentStatus(current)
    return target != current and plan_path(target, current) is not None
