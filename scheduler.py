import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from database import session_scope
from job_queue import EventDispatcher, RetryPolicy, Throttle, run_with_retries
from jobs import EventTrigger, JobDefinition, build_jobs
from recurrence import local_now


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STARTUP_JOB = "trigger-recurring-transactions"


class SchedulerManager:
    def __init__(
        self,
        jobs: Optional[list[JobDefinition]] = None,
        *,
        settings: Optional[Settings] = None,
        session_factory: Optional[sessionmaker] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.jobs = {job.id: job for job in (jobs or build_jobs(self.settings))}
        self.retry_policy = RetryPolicy(
            max_retries=self.settings.job_max_retries,
            base_delay=timedelta(seconds=self.settings.job_retry_base_secs),
        )
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

        handlers = {}
        throttles = {}
        for job in self.jobs.values():
            if not isinstance(job.trigger, EventTrigger):
                continue
            handlers[job.trigger.event] = job.handler
            if job.trigger.throttle_limit:
                throttles[job.trigger.event] = Throttle(
                    job.trigger.throttle_limit, job.trigger.throttle_period
                )
        self.dispatcher = EventDispatcher(
            handlers,
            throttles=throttles,
            retry_policy=self.retry_policy,
            session_factory=session_factory,
            batch_size=self.settings.dispatch_batch_size,
        )

    def run_job(
        self, job_id: str, source: str = "manual", now: Optional[datetime] = None
    ) -> dict:
        job = self.jobs.get(job_id)
        if job is None or job.is_event:
            raise KeyError(job_id)
        logger.info(f"scheduler_run: job={job_id} source={source}")

        def attempt() -> dict:
            with session_scope(self.session_factory) as session:
                return job.handler(session, now or local_now())

        result = run_with_retries(attempt, self.retry_policy, label=job_id)
        logger.info(f"scheduler_run: job={job_id} source={source} result={result}")
        return result

    def _dispatch_events(self) -> None:
        for event_id in self.dispatcher.claim(local_now()):
            self.scheduler.add_job(
                self.dispatcher.run_event,
                args=[event_id],
                id=f"event-{event_id}",
                replace_existing=True,
                misfire_grace_time=None,
            )

    def register(self) -> None:
        for job in self.jobs.values():
            if job.is_event:
                continue
            self.scheduler.add_job(
                self.run_job,
                job.trigger,
                args=[job.id, "cron"],
                id=job.id,
                name=job.name,
                replace_existing=True,
                misfire_grace_time=job.misfire_grace_time,
                max_instances=1,
                coalesce=True,
            )

        self.scheduler.add_job(
            self._dispatch_events,
            IntervalTrigger(seconds=self.settings.dispatch_interval_secs),
            id="dispatch-events",
            replace_existing=True,
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
        )

    def start(self) -> None:
        self.run_job(STARTUP_JOB, "startup")
        self.register()
        self.scheduler.start()
        logger.info(
            f"Scheduler started with jobs={sorted(self.jobs)} "
            f"dispatch_every={self.settings.dispatch_interval_secs}s"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
