"""
결제 서비스 패키지
"""
