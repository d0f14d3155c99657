"""
Sequence Scheduler Service
Persists sequence steps and delivers them from a background loop once they are due.
"""
import asyncio
import traceback
from typing import Optional, Dict, Any, Callable, Awaitable
from datetime import datetime
from utils.log_utils import LogUtil
from database.flow_db import FlowDB
from models.scheduled_step_data import ScheduledStepData, build_dedupe_key

# Handler invoked for each due step; returns True once the step has been sent
DeliveryHandler = Callable[[ScheduledStepData], Awaitable[bool]]


class SequenceSchedulerService:
    """
    Scheduler collaborator for sequence nodes. Steps are stored before the engine
    moves on, so they survive restarts; delivery is at-least-once and a step is
    only marked processed after its handler reports success.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        delivery_handler: Optional[DeliveryHandler] = None,
        check_interval_seconds: int = 60,
        max_attempts: int = 5
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.delivery_handler = delivery_handler
        self.check_interval_seconds = check_interval_seconds
        self.max_attempts = max_attempts
        self._running = False
        self._task = None

    def set_delivery_handler(self, delivery_handler: DeliveryHandler):
        self.delivery_handler = delivery_handler

    async def schedule_step(
        self,
        instance_id: str,
        step_id: str,
        fire_at: datetime,
        payload: Dict[str, Any],
        flow_id: Optional[str] = None,
        node_id: Optional[str] = None,
        recipient: Optional[str] = None
    ) -> ScheduledStepData:
        """
        Persist a step for delivery at fire_at. Scheduling the same
        (instance_id, step_id) twice keeps the first record.
        """
        step = ScheduledStepData(
            instance_id=instance_id,
            step_id=step_id,
            dedupe_key=build_dedupe_key(instance_id, step_id),
            flow_id=flow_id,
            node_id=node_id,
            recipient=recipient,
            fire_at=fire_at,
            payload=payload
        )
        saved = await self.flow_db.save_scheduled_step(step)
        self.log_util.info(
            service_name="SequenceSchedulerService",
            message=f"[SCHEDULER] Step {step.dedupe_key} scheduled for {fire_at.isoformat()}"
        )
        return saved

    async def start(self):
        """
        Start the background scheduler task.
        """
        if self._running:
            self.log_util.warning(
                service_name="SequenceSchedulerService",
                message="Scheduler is already running"
            )
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        self.log_util.info(
            service_name="SequenceSchedulerService",
            message=f"Sequence scheduler started, checking every {self.check_interval_seconds} seconds"
        )

    async def stop(self):
        """
        Stop the background scheduler task.
        """
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.log_util.info(
            service_name="SequenceSchedulerService",
            message="Sequence scheduler stopped"
        )

    async def _scheduler_loop(self):
        """
        Main scheduler loop that checks for due steps and delivers them.
        """
        while self._running:
            try:
                await self.process_due_steps()
                await asyncio.sleep(self.check_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log_util.error(
                    service_name="SequenceSchedulerService",
                    message=f"Error in scheduler loop: {str(e)}"
                )
                self.log_util.error(
                    service_name="SequenceSchedulerService",
                    message=f"Traceback: {traceback.format_exc()}"
                )
                # Wait before retrying to avoid tight error loop
                await asyncio.sleep(self.check_interval_seconds)

    async def process_due_steps(self) -> int:
        """
        Deliver all due steps once.

        Returns:
            Number of steps delivered successfully
        """
        due_steps = await self.flow_db.get_due_scheduled_steps()
        if not due_steps:
            return 0

        self.log_util.info(
            service_name="SequenceSchedulerService",
            message=f"[SCHEDULER] Found {len(due_steps)} due step(s) to deliver"
        )

        delivered = 0
        for step in due_steps:
            if await self._deliver_step(step):
                delivered += 1
        return delivered

    async def _deliver_step(self, step: ScheduledStepData) -> bool:
        if not self.delivery_handler:
            self.log_util.error(
                service_name="SequenceSchedulerService",
                message="Delivery handler not set, cannot deliver scheduled steps"
            )
            return False

        try:
            sent = await self.delivery_handler(step)
            error = None if sent else "Delivery handler reported failure"
        except Exception as e:
            sent = False
            error = str(e)
            self.log_util.error(
                service_name="SequenceSchedulerService",
                message=f"Error delivering step {step.dedupe_key}: {error}"
            )

        if sent:
            await self.flow_db.mark_scheduled_step_processed(step.dedupe_key)
            self.log_util.info(
                service_name="SequenceSchedulerService",
                message=f"[SCHEDULER] Step {step.dedupe_key} delivered to {step.recipient}"
            )
            return True

        if step.attempts + 1 >= self.max_attempts:
            # Give up so the step stops being retried
            await self.flow_db.mark_scheduled_step_processed(step.dedupe_key)
            self.log_util.error(
                service_name="SequenceSchedulerService",
                message=f"[SCHEDULER] Step {step.dedupe_key} dropped after {step.attempts + 1} attempt(s): {error}"
            )
        else:
            await self.flow_db.record_scheduled_step_failure(step.dedupe_key, error)
            self.log_util.warning(
                service_name="SequenceSchedulerService",
                message=f"[SCHEDULER] Step {step.dedupe_key} attempt {step.attempts + 1} failed, will retry: {error}"
            )
        return False
