import logging
from typing import Any

from batchkeeper.framework import FinalStatusSnapshot

logger = logging.getLogger(__name__)


class LoggingCallbackHandler:
    """Callback handler that records batch outcomes in the log."""

    async def on_complete(  # noqa: PLR6301
        self, status: FinalStatusSnapshot, opts: dict[str, Any]
    ) -> None:
        logger.info(
            "batch complete",
            extra={
                "bid": status.bid,
                "total": status.total,
                "failures": status.failures,
                "failure_info": status.failure_info,
                "opts": opts,
            },
        )

    async def on_success(  # noqa: PLR6301
        self, status: FinalStatusSnapshot, opts: dict[str, Any]
    ) -> None:
        logger.info(
            "batch succeeded",
            extra={"bid": status.bid, "total": status.total, "opts": opts},
        )
