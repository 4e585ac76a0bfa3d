"""
D7 Billing Deferred Tasks

Work that runs after a payment callback has been acknowledged: invoice
rendering and the confirmation email. A bounded queue feeds a fixed pool of
worker threads; failures are logged and counted, never retried, and never
touch financial state.
"""

import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from core.exceptions import DeferredTaskFailureError
from core.logging import get_logger

from .email_client import EmailAttachment, EmailMessage, EmailSender
from .invoice import InvoiceDocument, InvoiceRenderer, render_confirmation_email

logger = get_logger("d7_billing.deferred_tasks")

_STOP = object()


class DeferredTask(ABC):
    """Unit of post-acknowledgment work"""

    name = "deferred_task"

    @abstractmethod
    def run(self) -> None:
        pass

    def describe(self) -> str:
        return self.name


class InvoiceEmailTask(DeferredTask):
    """Render the invoice and email it with the payment confirmation"""

    name = "invoice_email"

    def __init__(
        self,
        invoice: InvoiceDocument,
        renderer: InvoiceRenderer,
        sender: EmailSender,
        company_name: str = "One Client Report",
    ):
        self.invoice = invoice
        self.renderer = renderer
        self.sender = sender
        self.company_name = company_name

    def describe(self) -> str:
        return f"{self.name}:{self.invoice.invoice_number}"

    def build_message(self) -> EmailMessage:
        rendered = self.renderer.render(self.invoice)
        html = render_confirmation_email(
            customer_name=self.invoice.customer_name,
            plan_name=self.invoice.plan_name,
            amount=self.invoice.amount,
            currency=self.invoice.currency,
            company_name=self.company_name,
        )
        return EmailMessage(
            to_email=self.invoice.customer_email,
            to_name=self.invoice.customer_name,
            subject=f"Payment Successful - {self.invoice.plan_name}",
            html_content=html,
            attachments=[EmailAttachment(rendered.filename, rendered.content, rendered.content_type)],
        )

    def run(self) -> None:
        self.sender.send(self.build_message())
        logger.info(
            f"Invoice {self.invoice.invoice_number} emailed to {self.invoice.customer_email}"
        )


@dataclass
class RunnerStats:
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    dropped: int = 0
    abandoned: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class DeferredTaskRunner:
    """
    Bounded queue plus worker threads.

    submit() never blocks: a full queue or a stopped runner drops the task
    and returns False. shutdown(drain=True) lets queued and in-flight tasks
    finish; shutdown(drain=False) discards queued tasks and waits only for
    the ones already running.
    """

    def __init__(self, max_queue_size: int = 100, workers: int = 2, name: str = "billing-deferred"):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.max_queue_size = max_queue_size
        self.worker_count = workers
        self.name = name

        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue_size)
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._accepting = False
        self._stats = RunnerStats()

    @property
    def is_running(self) -> bool:
        return self._accepting

    def start(self) -> None:
        with self._lock:
            if self._accepting:
                return
            self._threads = [
                threading.Thread(target=self._work, name=f"{self.name}-{index}", daemon=True)
                for index in range(self.worker_count)
            ]
            for thread in self._threads:
                thread.start()
            self._accepting = True
        logger.info(f"Started {self.name} runner with {self.worker_count} workers, queue size {self.max_queue_size}")

    def submit(self, task: DeferredTask) -> bool:
        with self._lock:
            if not self._accepting:
                self._stats.dropped += 1
                logger.warning(f"Runner {self.name} not accepting work, dropped {task.describe()}")
                return False
            try:
                self._queue.put_nowait(task)
            except queue.Full:
                self._stats.dropped += 1
                logger.error(f"Deferred queue full ({self.max_queue_size}), dropped {task.describe()}")
                return False
            self._stats.submitted += 1
        return True

    def _work(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._execute(item)
            finally:
                self._queue.task_done()

    def _execute(self, task: DeferredTask) -> None:
        try:
            task.run()
        except Exception as e:
            failure = DeferredTaskFailureError(task.describe(), str(e))
            with self._lock:
                self._stats.failed += 1
            logger.error(failure.message, exc_info=True, extra=failure.details)
            return
        with self._lock:
            self._stats.completed += 1

    def _discard_queued(self) -> int:
        discarded = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return discarded
            if item is not _STOP:
                discarded += 1
            self._queue.task_done()

    def shutdown(self, drain: bool = True, timeout: Optional[float] = None) -> int:
        """
        Stop accepting work and stop the workers.

        Returns:
            Number of queued tasks abandoned without running
        """
        with self._lock:
            was_running = self._accepting
            self._accepting = False
        if not was_running:
            return 0

        deadline = None if timeout is None else time.monotonic() + timeout
        abandoned = 0 if drain else self._discard_queued()

        for _ in self._threads:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            try:
                self._queue.put(_STOP, timeout=remaining)
            except queue.Full:
                break

        for thread in self._threads:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            thread.join(remaining)

        still_running = [thread.name for thread in self._threads if thread.is_alive()]
        if still_running:
            leftover = self._discard_queued()
            abandoned += leftover
            logger.warning(f"Runner {self.name} shutdown timed out, workers still busy: {still_running}")

        with self._lock:
            self._stats.abandoned += abandoned
        logger.info(f"Stopped {self.name} runner (drain={drain}), abandoned {abandoned} tasks")
        return abandoned

    def stats(self) -> Dict[str, int]:
        with self._lock:
            snapshot = self._stats.to_dict()
        snapshot["queued"] = self._queue.qsize()
        return snapshot
