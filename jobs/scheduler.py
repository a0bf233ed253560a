"""Background job scheduler for order timers and settlement release"""

import logging
from typing import Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal
from services.fulfillment_service import FulfillmentService, fulfillment_service
from services.order_expiry_service import OrderExpiryService, order_expiry_service

logger = logging.getLogger(__name__)


class SettlementScheduler:
    """Runs the sweeper jobs; each job opens its own session"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 expiry_service: Optional[OrderExpiryService] = None,
                 fulfillment: Optional[FulfillmentService] = None):
        self.session_factory = session_factory
        self.expiry_service = expiry_service or order_expiry_service
        self.fulfillment = fulfillment or fulfillment_service

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': ThreadPoolExecutor(max_workers=4)
        }
        job_defaults = {
            'coalesce': True,  # Collapse missed runs into one
            'max_instances': 1,
            'misfire_grace_time': 60
        }

        self.scheduler = BackgroundScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register all sweeper jobs"""

        # Unpaid orders past their payment window
        self.scheduler.add_job(
            self.handle_expired_orders,
            trigger=IntervalTrigger(minutes=1),
            id="cancel_expired_orders",
            name="Cancel Expired Orders",
            max_instances=1,
            coalesce=True,
        )

        # Holds whose reservation lapsed without a cancel (crashed checkout)
        self.scheduler.add_job(
            self.reclaim_expired_holds,
            trigger=IntervalTrigger(minutes=1, seconds=30),
            id="reclaim_expired_holds",
            name="Reclaim Expired Inventory Holds",
            max_instances=1,
            coalesce=True,
        )

        # Paid auto-delivery orders whose inline delivery did not run
        self.scheduler.add_job(
            self.deliver_pending_orders,
            trigger=IntervalTrigger(minutes=2),
            id="deliver_pending_orders",
            name="Deliver Pending Auto Orders",
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.add_job(
            self.auto_complete_orders,
            trigger=IntervalTrigger(minutes=15),
            id="auto_complete_orders",
            name="Auto Complete Delivered Orders",
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.add_job(
            self.release_completed_orders,
            trigger=IntervalTrigger(minutes=5),
            id="release_completed_orders",
            name="Release Completed Order Funds",
            max_instances=1,
            coalesce=True,
        )

        logger.info(f"⏰ SCHEDULER: {len(self.scheduler.get_jobs())} jobs registered")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ Settlement scheduler started")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🛑 Settlement scheduler stopped")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def _run(self, job_name: str, work: Callable[[Session], object]):
        session = self.session_factory()
        try:
            result = work(session)
            logger.debug(f"JOB_DONE: {job_name} -> {result}")
            return result
        except Exception as e:
            session.rollback()
            logger.error(f"❌ JOB_FAILED: {job_name}: {e}", exc_info=True)
            return None
        finally:
            session.close()

    def handle_expired_orders(self):
        return self._run("cancel_expired_orders", self.expiry_service.cancel_expired_orders)

    def reclaim_expired_holds(self):
        return self._run("reclaim_expired_holds", self.expiry_service.reclaim_expired_holds)

    def deliver_pending_orders(self):
        return self._run(
            "deliver_pending_orders",
            lambda session: self.fulfillment.deliver_pending(session, Config.SWEEPER_BATCH_SIZE),
        )

    def auto_complete_orders(self):
        return self._run("auto_complete_orders", self.expiry_service.auto_complete_delivered)

    def release_completed_orders(self):
        return self._run("release_completed_orders", self.expiry_service.release_completed_orders)
