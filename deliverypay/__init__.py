"""
DeliveryPay - 배달 플랫폼 결제 코어

PG 연동(카카오페이, 토스페이먼츠, 네이버페이), 결제 상태 관리, 환불, 위험 평가, 웹훅 정합성
"""

__version__ = "1.0.0"
