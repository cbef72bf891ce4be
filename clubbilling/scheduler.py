import asyncio
import logging
from datetime import datetime, timezone

from clubbilling.services.container import Services

log = logging.getLogger("scheduler")

STARTUP_DELAY_SECONDS = 60

_scheduler_task: asyncio.Task | None = None


async def run_billing_evaluation_once(services: Services):
    """One tier automaton pass, skipped when another instance holds the lock."""
    try:
        async with services.lock(
            "billing:evaluate",
            timeout=services.settings.LOCK_TIMEOUT,
            retry_count=1,
            raise_on_fail=False,
        ) as acquired:
            if not acquired:
                log.info("[SCHEDULER] Billing evaluation already running elsewhere, skipping")
                return None
            summary = await services.automaton.evaluate_all()
        log.info(
            f"[SCHEDULER] Billing evaluation complete: "
            f"evaluated={summary.evaluated}, failed={summary.failed}, "
            f"upgrades={summary.upgrades_executed}, downgrades={summary.downgrades_executed}"
        )
        return summary
    except Exception as e:
        log.exception(f"[SCHEDULER] Billing evaluation failed: {e}")
        return None


async def _scheduler_loop(services: Services):
    interval_hours = services.settings.BILLING_EVAL_INTERVAL_HOURS
    log.info(f"[SCHEDULER] Starting billing scheduler: interval={interval_hours}h")

    await asyncio.sleep(STARTUP_DELAY_SECONDS)

    while True:
        try:
            log.info(f"[SCHEDULER] Running billing evaluation at {datetime.now(timezone.utc).isoformat()}")
            await run_billing_evaluation_once(services)
        except asyncio.CancelledError:
            log.info("[SCHEDULER] Scheduler cancelled, shutting down")
            break

        log.info(f"[SCHEDULER] Next run in {interval_hours} hours")
        await asyncio.sleep(interval_hours * 3600)


def start_scheduler(services: Services):
    global _scheduler_task

    if not services.settings.BILLING_EVAL_ENABLED:
        log.info("[SCHEDULER] Billing scheduler is disabled (BILLING_EVAL_ENABLED=false)")
        return

    if _scheduler_task is not None:
        log.warning("[SCHEDULER] Scheduler already running")
        return

    _scheduler_task = asyncio.create_task(_scheduler_loop(services))
    log.info("[SCHEDULER] Billing scheduler started")


def stop_scheduler():
    global _scheduler_task

    if _scheduler_task is not None:
        _scheduler_task.cancel()
        _scheduler_task = None
        log.info("[SCHEDULER] Billing scheduler stopped")
