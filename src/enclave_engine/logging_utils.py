"""
Logging helpers for the engine.

Each stage of a submission (deployment check, estimation, sponsorship,
signing, submission, fee replacement, receipt polling) is wrapped in
``log_operation`` so one debug line marks its start and one line records
its outcome and duration. Relay URLs often embed API keys and are passed
through ``mask_url`` before they reach a log line.
"""
from __future__ import annotations

import itertools
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

_step_ids = itertools.count(1)


class OperationType(str, Enum):
    """Stages of a UserOperation's life that get their own log record."""
    RPC_CALL = "rpc_call"
    DEPLOYMENT_CHECK = "deployment_check"
    GAS_ESTIMATION = "gas_estimation"
    SPONSORSHIP = "sponsorship"
    SIGNING = "signing"
    SUBMISSION = "submission"
    FEE_REPLACEMENT = "fee_replacement"
    RECEIPT_POLLING = "receipt_polling"


@dataclass
class OperationContext:
    operation_id: str
    operation_type: OperationType
    network: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    _clock: float = field(default_factory=time.perf_counter, repr=False)

    def finish(self, error: Optional[BaseException] = None) -> None:
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (time.perf_counter() - self._clock) * 1000
        self.success = error is None
        if error is not None:
            self.error = str(error) or type(error).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.operation_id,
            "type": self.operation_type.value,
            "network": self.network,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


@asynccontextmanager
async def log_operation(
    operation_type: OperationType,
    network: str,
    log: Optional[logging.Logger] = None,
    **metadata: Any,
) -> AsyncIterator[OperationContext]:
    """Time a stage and log how it ended.

    Extra keyword arguments are attached to both records. Failures are
    logged at ERROR and re-raised unchanged; cancellation is recorded too.

        async with log_operation(OperationType.SIGNING, "arbitrum_one", logger, sender=addr):
            signature = await signer.sign(digest)
    """
    log = log or logger
    ctx = OperationContext(
        operation_id=f"op-{next(_step_ids)}",
        operation_type=operation_type,
        network=network,
        metadata=metadata,
    )
    log.debug("%s started on %s", operation_type.value, network, extra={"operation": ctx.to_dict()})
    try:
        yield ctx
    except BaseException as exc:
        ctx.finish(exc)
        log.error(
            "%s failed on %s after %.0fms: %s",
            operation_type.value, network, ctx.duration_ms, ctx.error,
            extra={"operation": ctx.to_dict()},
        )
        raise
    ctx.finish()
    log.info(
        "%s finished on %s in %.0fms",
        operation_type.value, network, ctx.duration_ms,
        extra={"operation": ctx.to_dict()},
    )


def mask_url(url: str) -> str:
    """Drop credentials, query and fragment from a relay or node URL."""
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return url.split("?", 1)[0]
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    masked = urlunsplit((parts.scheme, host, parts.path, "", ""))
    if parts.query:
        masked += "?<params_masked>"
    return masked


def mask_address(address: str) -> str:
    """0x1234567890...7890 -> 0x1234...7890"""
    if len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def setup_logging(level: str = "INFO", fmt: Optional[str] = None) -> None:
    """Configure root logging for the CLI and keep HTTP client chatter quiet."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(
        level=numeric,
        format=fmt or "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    logging.getLogger("enclave_engine").setLevel(numeric)
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
