"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from settlement_gateway.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_gateway_call(
    request_id: str,
    layer: str,
    method: str,
    outcome: str,
    duration_ms: float,
    error_code: Optional[int] = None,
) -> None:
    """Log one platform call; params and signatures are never logged"""
    level = logging.INFO if outcome in ("ok", "cached") else logging.WARNING
    logging.getLogger("settlement_gateway.gateway").log(
        level,
        "Platform call completed",
        extra={
            "request_id": request_id,
            "layer": layer,
            "method": method,
            "outcome": outcome,
            "error_code": error_code,
            "duration_ms": duration_ms,
        },
    )


def log_payout_outcome(
    beneficiary_id: str,
    outcome: str,
    payout_id: Optional[int],
    amount: str,
    error: Optional[str] = None,
) -> None:
    """Log the result of settling one beneficiary"""
    level = logging.INFO if outcome in ("completed", "skipped") else logging.ERROR
    logging.getLogger("settlement_gateway.payouts").log(
        level,
        "Payout settled" if outcome == "completed" else f"Payout {outcome}",
        extra={
            "beneficiary_id": beneficiary_id,
            "step": "payout_outcome",
            "outcome": outcome,
            "payout_id": payout_id,
            "payout_amount": amount,
            "error": error,
        },
    )


def log_batch_run(created: int, total: int, duration_ms: float) -> None:
    """Log structured batch summary"""
    logging.getLogger("settlement_gateway.payouts").info(
        "Scheduled payout run completed",
        extra={
            "step": "batch_complete",
            "created": created,
            "total": total,
            "partial_failure": created < total,
            "duration_ms": duration_ms,
        },
    )
