"""Broadcast controller — collect-then-send campaigns started by staff.

Per admin: ``none → collecting → sending → none`` or ``collecting → none``
on cancel. Jobs live in one mapping keyed by admin id, owned by this
controller; an entry is removed when its fan-out finishes or it is cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from . import keyboards
from .errors import ExternalServiceError, ValidationError
from .models import BroadcastMode, EventKind, InboundEvent, Keyboard, MessageRef
from .pacing import PacedResult, PacedRunner

if TYPE_CHECKING:
    from .config import ShopConfig
    from .database import ShopDatabase
    from .gateway import MessagingGateway


class JobState(str, Enum):
    COLLECTING = "collecting"
    SENDING = "sending"


@dataclass
class BroadcastJob:
    admin_id: int
    mode: BroadcastMode
    chat_id: int
    thread_id: int | None = None
    messages: list[MessageRef] = field(default_factory=list)
    state: JobState = JobState.COLLECTING
    runner: PacedRunner | None = None


class BroadcastController:
    """Owns the broadcast job table and the fan-out tasks."""

    def __init__(
        self,
        config: ShopConfig,
        database: ShopDatabase,
        gateway: MessagingGateway,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._messages = config.messages
        self._db = database
        self._gateway = gateway
        self._logger = logger or logging.getLogger("shop.broadcast")
        self._jobs: dict[int, BroadcastJob] = {}
        self._tasks: set[asyncio.Task] = set()
        self.completed = 0

    @property
    def active_jobs(self) -> int:
        return len(self._jobs)

    def get_job(self, admin_id: int) -> BroadcastJob | None:
        return self._jobs.get(admin_id)

    # ══════════════════════════════════════════════════════════
    #  Collecting
    # ══════════════════════════════════════════════════════════

    async def start(
        self, admin_id: int, chat_id: int, thread_id: int | None, mode: BroadcastMode,
    ) -> BroadcastJob:
        if admin_id in self._jobs:
            raise ValidationError("A broadcast is already in progress. Send or cancel it first.")
        job = BroadcastJob(admin_id=admin_id, mode=mode, chat_id=chat_id, thread_id=thread_id)
        self._jobs[admin_id] = job
        self._logger.info("Broadcast (%s) started by %s in %s", mode.value, admin_id, chat_id)
        try:
            await self._post(
                job, self._messages.broadcast_started.format(mode=mode.value), keyboards.broadcast_controls(),
            )
        except ExternalServiceError:
            del self._jobs[admin_id]
            raise
        return job

    def collect(self, event: InboundEvent) -> bool:
        """Record a staff-chat message for the sender's collecting job.

        Commands, button presses and messages from another chat or topic are
        not collected. Returns True when the message was added."""
        job = self._jobs.get(event.user_id)
        if job is None or job.state is not JobState.COLLECTING:
            return False
        if event.kind in (EventKind.COMMAND, EventKind.BUTTON) or event.message is None:
            return False
        if event.chat_id != job.chat_id or event.thread_id != job.thread_id:
            return False
        job.messages.append(event.message)
        self._logger.debug("Broadcast of %s: collected %d message(s)", job.admin_id, len(job.messages))
        return True

    # ══════════════════════════════════════════════════════════
    #  Controls
    # ══════════════════════════════════════════════════════════

    async def handle_control(self, event: InboundEvent) -> None:
        """Send/Cancel press. Acknowledges exactly once."""
        ack_text: str | None = None
        try:
            if event.payload == keyboards.BROADCAST_SEND:
                job = await self.send(event.user_id)
                ack_text = self._messages.broadcast_collected.format(count=len(job.messages))
            elif event.payload == keyboards.BROADCAST_CANCEL:
                await self.cancel(event.user_id)
                ack_text = self._messages.broadcast_cancelled
        except ValidationError as e:
            ack_text = e.message
        except ExternalServiceError as e:
            self._logger.warning("Broadcast control failed for %s: %s", event.user_id, e)
            ack_text = self._messages.retry
        except Exception:
            self._logger.exception("Error handling broadcast control from %s", event.user_id)
            ack_text = self._messages.retry
        finally:
            if event.interaction_id:
                try:
                    await self._gateway.acknowledge(event.interaction_id, text=ack_text)
                except ExternalServiceError as e:
                    self._logger.debug("Acknowledge failed: %s", e)

    async def send(self, admin_id: int) -> BroadcastJob:
        """End collection and fan out in a background task."""
        job = self._jobs.get(admin_id)
        if job is None or job.state is not JobState.COLLECTING:
            raise ValidationError("No broadcast is being collected.")
        recipients = await self._db.list_user_ids()
        job.state = JobState.SENDING
        job.runner = PacedRunner(self._config.broadcast.delay_seconds, logger=self._logger)
        try:
            await self._post(job, self._messages.broadcast_sending.format(
                count=len(job.messages), users=len(recipients),
            ))
        except ExternalServiceError as e:
            self._logger.warning("Could not post broadcast progress to %s: %s", job.chat_id, e)
        task = asyncio.create_task(self._fan_out(job, recipients))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def cancel(self, admin_id: int) -> None:
        """Discard the job. A running fan-out stops before its next recipient."""
        job = self._jobs.pop(admin_id, None)
        if job is None:
            raise ValidationError("No broadcast to cancel.")
        if job.runner is not None:
            job.runner.stop()
        self._logger.info("Broadcast by %s cancelled (%s)", admin_id, job.state.value)
        try:
            await self._post(job, self._messages.broadcast_cancelled)
        except ExternalServiceError as e:
            self._logger.warning("Could not post broadcast cancellation to %s: %s", job.chat_id, e)

    async def wait(self) -> None:
        """Wait for running fan-outs (used in shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for job in self._jobs.values():
            if job.runner is not None:
                job.runner.stop()
        await self.wait()

    # ══════════════════════════════════════════════════════════
    #  Fan-out
    # ══════════════════════════════════════════════════════════

    async def _replay(self, job: BroadcastJob, user_id: int) -> None:
        for ref in job.messages:
            if job.mode is BroadcastMode.FORWARD:
                await self._gateway.forward_message(ref, user_id)
            else:
                await self._gateway.copy_message(ref, user_id)

    async def _fan_out(self, job: BroadcastJob, recipients: list[int]) -> PacedResult:
        result = PacedResult()
        try:
            result = await job.runner.run(recipients, lambda uid: self._replay(job, uid))
            self.completed += 1
            self._logger.info(
                "Broadcast by %s finished: %d success, %d failed%s",
                job.admin_id, result.success, result.failed,
                " (interrupted)" if result.interrupted else "",
            )
            await self._post(job, self._messages.broadcast_summary.format(
                success=result.success, failed=result.failed,
            ))
        except ExternalServiceError as e:
            self._logger.warning("Could not post broadcast summary to %s: %s", job.chat_id, e)
        except Exception:
            self._logger.exception("Broadcast by %s crashed", job.admin_id)
        finally:
            if self._jobs.get(job.admin_id) is job:
                del self._jobs[job.admin_id]
        return result

    async def _post(self, job: BroadcastJob, text: str, keyboard: Keyboard | None = None) -> None:
        await self._gateway.send_text(job.chat_id, text, thread_id=job.thread_id, keyboard=keyboard)
