"""
Celery Configuration for DeliveryPay

브로커, 결과 백엔드, 작업 라우팅, 주기 작업을 설정합니다.
"""

from celery.schedules import crontab

from deliverypay.config import get_settings


_settings = get_settings()

# =======================
# Broker and Backend
# =======================

broker_url = _settings.CELERY_BROKER_URL
result_backend = _settings.CELERY_RESULT_BACKEND

# =======================
# Task Configuration
# =======================

task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

timezone = "Asia/Seoul"
enable_utc = True

# 작업 결과 만료 시간 (1일)
result_expires = 60 * 60 * 24

task_acks_late = True  # 작업 완료 후 ACK
task_reject_on_worker_lost = True  # 워커 중단 시 작업 재큐잉
worker_prefetch_multiplier = 1

# =======================
# Task Routing
# =======================

task_routes = {
    "deliverypay.tasks.reconciliation.sync_stale_payments": {
        "queue": "reconciliation",
    },
}

# =======================
# Beat Schedule (주기적 작업)
# =======================

beat_schedule = {
    # 5분마다 오래 머문 CREATED/PENDING 결제를 PG사 기준으로 동기화
    "sync-stale-payments": {
        "task": "deliverypay.tasks.reconciliation.sync_stale_payments",
        "schedule": crontab(minute="*/5"),
    },
}

# =======================
# Worker Configuration
# =======================

worker_log_format = "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s"
worker_task_log_format = (
    "[%(asctime)s: %(levelname)s/%(processName)s] "
    "[%(task_name)s(%(task_id)s)] %(message)s"
)

worker_send_task_events = True
task_send_sent_event = True
