"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from bullion_gateway.config import settings


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


def log_settlement(
    request_id: str,
    user_id: str,
    kind: str,
    channel: str,
    transaction_id: str,
    status: str,
    duration_ms: float,
    plan_id: Optional[str] = None,
) -> None:
    """Log structured settlement outcome for analysis"""
    logging.getLogger("bullion_gateway.settlement").info(
        "Settlement completed",
        extra={
            "request_id": request_id,
            "user_id": user_id,
            "step": "settlement_complete",
            "transaction_kind": kind,
            "channel": channel,
            "transaction_id": transaction_id,
            "transaction_status": status,
            "plan_id": plan_id,
            "duration_ms": duration_ms,
        },
    )


def log_maturity_run(processed: int, skipped: int, failed: int, duration_ms: float) -> None:
    """Log one maturity scheduler pass"""
    logging.getLogger("bullion_gateway.scheduler").info(
        "Maturity run completed",
        extra={
            "step": "maturity_run_complete",
            "processed": processed,
            "skipped": skipped,
            "failed": failed,
            "duration_ms": duration_ms,
        },
    )
