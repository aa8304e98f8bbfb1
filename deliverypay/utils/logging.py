"""
로깅 설정 및 민감 데이터 마스킹

결제 로그에 PG 시크릿키, 인증 헤더, 카드 번호, 구매자 연락처가 남지 않도록
모든 핸들러에 SensitiveDataFilter를 붙이고 JSON 포맷터도 extra 필드를 한 번 더 마스킹합니다.
"""

import json
import logging
import os
import re
from datetime import datetime
from typing import Any, Optional


class SensitiveDataFilter(logging.Filter):
    """
    민감 데이터 마스킹 필터

    메시지와 문자열 인자를 마스킹합니다. 숫자 인자(%d)는 그대로 둡니다.
    """

    PATTERNS: list[tuple[str, re.Pattern, str]] = [
        # 토스 키: test_sk_xxx / live_ck_xxx -> test_sk_***
        ("pg_key", re.compile(r"\b(test|live)_(sk|ck|gsk)_[A-Za-z0-9]+"), r"\1_\2_***"),
        # PG 인증 헤더: KakaoAK xxx, Basic xxx, Bearer xxx
        (
            "auth_header",
            re.compile(r"\b(KakaoAK|Basic|Bearer)\s+[A-Za-z0-9+/=_\-\.]+", re.IGNORECASE),
            r"\1 ***",
        ),
        # JSON 비밀 필드 값
        (
            "secret_field",
            re.compile(
                r'"(secret_key|admin_key|merchant_key|webhook_secret|client_secret|pg_token|access_token)"\s*:\s*"[^"]*"',
                re.IGNORECASE,
            ),
            r'"\1": "***"',
        ),
        # 카드 번호: 1234-5678-9012-3456 -> 1234-****-****-3456
        (
            "card_number",
            re.compile(r"\b(\d{4})[\s\-]?(\d{4})[\s\-]?(\d{4})[\s\-]?(\d{4})\b"),
            r"\1-****-****-\4",
        ),
        # 이메일: user@example.com -> u***@example.com
        (
            "email",
            re.compile(r"\b([a-zA-Z0-9._%+-])[a-zA-Z0-9._%+-]*@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})\b"),
            r"\1***@\2",
        ),
        # 휴대폰: 010-1234-5678 -> 010-****-5678
        (
            "phone",
            re.compile(r"\b(01[016789])[\s\-]?(\d{3,4})[\s\-]?(\d{4})\b"),
            r"\1-****-\3",
        ),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.mask_sensitive_data(record.msg)
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                self.mask_sensitive_data(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True

    def mask_sensitive_data(self, text: str) -> str:
        """
        민감 데이터 마스킹

        Args:
            text: 원문

        Returns:
            str: 마스킹된 문자열
        """
        for _, pattern, replacement in self.PATTERNS:
            text = pattern.sub(replacement, text)
        return text


# LogRecord 기본 속성 (extra 필드 구분용)
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """
    JSON 로그 포맷터

    logger.info(..., extra={"payment_id": ...})로 넘긴 필드는 최상위 키가 됩니다.
    """

    def __init__(self, service: str = "deliverypay"):
        super().__init__()
        self.service = service
        self._masker = SensitiveDataFilter()

    def _extra_fields(self, record: logging.LogRecord) -> dict[str, Any]:
        fields = {}
        for key, value in vars(record).items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            fields[key] = self._masker.mask_sensitive_data(value) if isinstance(value, str) else value
        return fields

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "service": self.service,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            **self._extra_fields(record),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# 외부 라이브러리 로그 레벨
QUIET_LOGGERS = ("uvicorn", "sqlalchemy.engine", "httpx", "httpcore", "celery")


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """
    루트 로거 설정

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR, CRITICAL (기본값: LOG_LEVEL 환경 변수)
        log_format: "json" 또는 "text" (기본값: LOG_FORMAT 환경 변수)
        log_file: 로그 파일 경로 (없으면 콘솔만)
    """
    log_level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_format = log_format or os.getenv("LOG_FORMAT", "json")
    log_file = log_file or os.getenv("LOG_FILE")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if log_format == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(fmt=TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(SensitiveDataFilter())
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
