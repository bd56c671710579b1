"""
Scheduler pour les batchs Artis Sales
- Dispatcher outbox: toutes les minutes
- Sweeper SLA: toutes les 5 minutes
- Check-out automatique: tous les jours à 22h55 (heure locale)
- Compilation DSR: tous les jours à 23h (heure locale), après le check-out auto

Chaque exécution est sans état: une fonction de (données, now).
Un run raté est simplement repris au suivant.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

import config

logger = logging.getLogger("scheduler")


class TaskScheduler:
    """Gestionnaire de tâches planifiées"""

    def __init__(self):
        self.scheduler = AsyncIOScheduler(timezone=config.APP_TIMEZONE)

    def start(self):
        """Démarre le scheduler avec toutes les tâches"""
        # Outbox: toutes les minutes
        self.scheduler.add_job(
            self.dispatch_outbox,
            CronTrigger(minute="*"),
            id="outbox_dispatcher",
            name="Dispatcher outbox",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        # SLA: toutes les 5 minutes
        self.scheduler.add_job(
            self.sweep_sla,
            CronTrigger(minute="*/5"),
            id="sla_sweeper",
            name="Sweeper SLA",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        # Check-out auto: reps qui ont oublié de pointer leur départ
        self.scheduler.add_job(
            self.auto_checkout,
            CronTrigger(hour=config.AUTO_CHECKOUT_HOUR, minute=config.AUTO_CHECKOUT_MINUTE),
            id="auto_checkout",
            name="Check-out automatique",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        # DSR: après la fin de journée
        self.scheduler.add_job(
            self.compile_dsr,
            CronTrigger(hour=config.DSR_COMPILE_HOUR, minute=0),
            id="dsr_compiler",
            name="Compilation DSR",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        self.scheduler.start()
        logger.info(f"Scheduler démarré ({config.APP_TIMEZONE})")

    def stop(self):
        """Arrête le scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler arrêté")

    # ==================== TÂCHES PLANIFIÉES ====================

    async def _run(self, job_name: str, job):
        from email_service import email_service

        try:
            return await job()
        except Exception as e:
            logger.error(f"Scheduled job {job_name} failed: {type(e).__name__}: {e}")
            email_service.send_critical_alert(
                "SCHEDULER_ERROR",
                f"Le job {job_name} a échoué, il sera repris au prochain déclenchement",
                {"job": job_name, "error": f"{type(e).__name__}: {e}"}
            )
            return None

    async def dispatch_outbox(self):
        from services.event_dispatcher import run_dispatcher
        return await self._run("outbox_dispatcher", run_dispatcher)

    async def sweep_sla(self):
        from services.sla_sweeper import run_sla_sweep
        return await self._run("sla_sweeper", run_sla_sweep)

    async def auto_checkout(self):
        from services.attendance import run_auto_checkout
        return await self._run("auto_checkout", run_auto_checkout)

    async def compile_dsr(self):
        from services.dsr_compiler import compile_daily_reports
        return await self._run("dsr_compiler", compile_daily_reports)


# Instance globale
task_scheduler = TaskScheduler()
