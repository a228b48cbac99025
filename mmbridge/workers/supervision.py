"""Background worker: periodic liveness check of the assistant supervisor.

Exit notifications normally trigger restarts on their own; this loop is the
safety net for a child that vanished without anyone noticing, or a worker
task that died.
"""

from __future__ import annotations

import asyncio
import logging

from mmbridge.services.supervisor import AssistantSupervisor

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0


async def supervision_worker(
    supervisor: AssistantSupervisor,
    interval: float = DEFAULT_INTERVAL,
) -> None:
    """Main supervision loop. Runs until cancelled.

    Args:
        supervisor: The supervisor to check.
        interval: Seconds between checks.
    """
    logger.info("Supervision worker started (interval=%.1fs)", interval)
    healthy = True
    while True:
        try:
            ok = supervisor.check()
            if ok != healthy:
                if ok:
                    logger.info("Assistant healthy again (pid=%s)", supervisor.pid)
                else:
                    logger.warning("Assistant unhealthy: %s", supervisor.status())
                healthy = ok
        except Exception:
            logger.exception("Supervision worker error")
        await asyncio.sleep(interval)
