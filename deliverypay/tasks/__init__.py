"""
Celery Tasks for DeliveryPay

결제 정합성 배치 작업을 포함합니다.
"""

from celery import Celery

# Celery 애플리케이션 인스턴스 생성
app = Celery("deliverypay_tasks")

# celeryconfig 모듈에서 설정 로드
app.config_from_object("deliverypay.celeryconfig")

# 작업 모듈 자동 검색
app.autodiscover_tasks(["deliverypay.tasks"], related_name="reconciliation")
