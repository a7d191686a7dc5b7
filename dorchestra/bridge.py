"""
QueueBridge - Deliver queued task messages to execution units.

The QueueBridge implements:
- Parsing and validation of inbound TaskMessages
- Routing: destination "<namespace>/<logical name>" (or a bare logical name
  in the default namespace) -> UnitIdentity -> UnitHandle
- Per-message disposition: ack on success, delayed retry with exponential
  backoff for retryable failures, dead-letter for exhausted or permanent
  failures
- Parallel processing of a batch across a worker pool; messages in a batch
  are independent (one failure never blocks or rolls back another)

Disposition rules for a failed delivery with attempt counter n:
1. MalformedMessageError or any non-retryable error -> dead-letter, ack
2. retryable and n < max_retries -> retry after min(base * 2**n, cap)
3. retryable and n >= max_retries -> dead-letter, ack

With max_retries=3 a message that always fails is delivered 4 times and
dead-lettered once. The bridge is the only component that makes this
decision, and it never drops a message silently.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Optional

from dorchestra.errors import (
    MalformedMessageError,
    PipelineTerminatedError,
    describe_error,
    is_retryable,
)
from dorchestra.gateway import UnitGateway
from dorchestra.registry import derive_identity
from dorchestra.schemas import BatchReport, Disposition, MessageOutcome, TaskMessage
from dorchestra.task_queue import DeadLetterSink, TaskQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget and backoff for failed deliveries.

    Attributes:
        max_retries: Re-deliveries allowed after the first attempt
        backoff_base: Delay in seconds before the first re-delivery
        backoff_cap: Upper bound for any delay
    """
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 300.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_base < 0 or self.backoff_cap < 0:
            raise ValueError("backoff values must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after a failed delivery with attempt counter `attempt`."""
        return float(min(self.backoff_base * (2 ** attempt), self.backoff_cap))

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries


def parse_destination(destination: Any, default_namespace: str) -> tuple[str, str]:
    """
    Split a destination into (namespace, logical name).

    Raises:
        MalformedMessageError: If the destination is empty or malformed
    """
    if not isinstance(destination, str) or not destination.strip():
        raise MalformedMessageError(f"Message destination must be a non-empty string, got {destination!r}")
    if "/" in destination:
        namespace, name = destination.split("/", 1)
        if not namespace or not name:
            raise MalformedMessageError(f"Malformed destination: {destination!r}")
        return namespace, name
    return default_namespace, destination


def validate_message(message: Any) -> None:
    """
    Check the structure of an inbound message.

    Raises:
        MalformedMessageError: On the first structural problem
    """
    if not isinstance(message, TaskMessage):
        raise MalformedMessageError(f"Not a TaskMessage: {type(message).__name__}")
    if not isinstance(message.operation, str) or not message.operation:
        raise MalformedMessageError(f"Message operation must be a non-empty string, got {message.operation!r}")
    if message.payload is not None and not isinstance(message.payload, dict):
        raise MalformedMessageError(f"Message payload must be an object, got {type(message.payload).__name__}")
    attempt = message.delivery_attempt
    if isinstance(attempt, bool) or not isinstance(attempt, int) or attempt < 0:
        raise MalformedMessageError(f"delivery_attempt must be an integer >= 0, got {attempt!r}")


class QueueBridge:
    """
    Consumes TaskMessage batches and invokes their destination units.

    Usage:
        bridge = QueueBridge(
            gateway=gateway,
            queue=InMemoryTaskQueue(messages),
            dead_letters=JsonlDeadLetterSink("dead_letters.jsonl"),
            policy=RetryPolicy(max_retries=3),
        )
        report = bridge.process_batch(queue.receive(10))
        # or
        reports = bridge.drain()
    """

    def __init__(
        self,
        gateway: UnitGateway,
        queue: TaskQueue,
        dead_letters: DeadLetterSink,
        policy: Optional[RetryPolicy] = None,
        default_namespace: str = "default",
        workers: int = 8,
        batch_size: int = 10,
        call_timeout: Optional[float] = None,
        ack_all: bool = True,
    ):
        """
        Initialize the bridge.

        Args:
            gateway: Gateway used to invoke destination units
            queue: Queue the messages came from (ack/retry target)
            dead_letters: Destination for undeliverable messages
            policy: Retry policy (default: 3 retries, 1s base, 300s cap)
            default_namespace: Namespace for bare destination names
            workers: Messages processed in parallel
            batch_size: Messages taken per receive() in drain()
            call_timeout: Per-call timeout (None = the gateway default)
            ack_all: Acknowledge an all-successful batch with one ack_all()
        """
        self._gateway = gateway
        self._queue = queue
        self._dead_letters = dead_letters
        self._policy = policy or RetryPolicy()
        self._default_namespace = default_namespace
        self._workers = workers
        self._batch_size = batch_size
        self._call_timeout = call_timeout
        self._ack_all = ack_all

    @classmethod
    def from_config(cls, config, gateway: UnitGateway, queue: TaskQueue, dead_letters: DeadLetterSink) -> "QueueBridge":
        """Create a bridge using the bridge section of a DorchestraConfig."""
        return cls(
            gateway=gateway,
            queue=queue,
            dead_letters=dead_letters,
            policy=RetryPolicy(
                max_retries=config.max_retries,
                backoff_base=config.backoff_base_seconds,
                backoff_cap=config.backoff_cap_seconds,
            ),
            default_namespace=config.default_namespace,
            workers=config.bridge_workers,
            batch_size=config.batch_size,
            call_timeout=config.call_timeout_seconds,
        )

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def handle(self, message: TaskMessage) -> MessageOutcome:
        """
        Deliver one message and decide its disposition (without applying it).

        Never raises: every failure becomes a RETRY or DEAD_LETTER outcome.
        """
        try:
            validate_message(message)
            namespace, name = parse_destination(message.destination, self._default_namespace)
            identity = derive_identity(namespace, name)
            handle = self._gateway.get_handle(identity)
            result = handle.call(
                message.operation,
                message.payload or {},
                timeout=self._call_timeout,
                idempotency_key=message.message_id,
            )
        except Exception as e:
            return self._failure_outcome(message, e)

        logger.debug(f"Message {message.message_id} delivered to {message.destination}")
        return MessageOutcome(message=message, disposition=Disposition.ACK, result=result)

    @staticmethod
    def _log_context(message: Any) -> dict[str, Any]:
        return {
            "message_id": getattr(message, "message_id", None),
            "operation": getattr(message, "operation", None),
        }

    def _failure_outcome(self, message: Any, exc: Exception) -> MessageOutcome:
        error = describe_error(exc)
        if isinstance(exc, PipelineTerminatedError) and (exc.result or {}).get("failed_step"):
            # Redelivery of a pipeline that already failed: report the failing step
            error["failed_step"] = exc.result["failed_step"]
            error["step_error"] = exc.result.get("error")
        attempt = getattr(message, "delivery_attempt", 0)
        if isinstance(exc, MalformedMessageError):
            logger.warning(f"Malformed message {getattr(message, 'message_id', '?')}: {exc}")
            return MessageOutcome(message=message, disposition=Disposition.DEAD_LETTER, error=error)

        if is_retryable(exc) and self._policy.should_retry(attempt):
            delay = self._policy.delay_for(attempt)
            logger.info(
                f"Message {message.message_id} to {message.destination} failed "
                f"(attempt {attempt + 1}): {exc}; retrying in {delay}s",
                extra=self._log_context(message),
            )
            return MessageOutcome(
                message=message,
                disposition=Disposition.RETRY,
                error=error,
                retry_delay=delay,
            )

        reason = "retries exhausted" if is_retryable(exc) else "not retryable"
        logger.warning(
            f"Dead-lettering message {message.message_id} to {message.destination} "
            f"after attempt {attempt + 1} ({reason}): {exc}",
            extra=self._log_context(message),
        )
        return MessageOutcome(message=message, disposition=Disposition.DEAD_LETTER, error=error)

    def _apply(self, outcome: MessageOutcome) -> None:
        message = outcome.message
        if outcome.disposition == Disposition.ACK:
            self._queue.ack(message)
        elif outcome.disposition == Disposition.RETRY:
            self._queue.retry(message.next_attempt(outcome.error), outcome.retry_delay or 0.0)
        else:
            dead = replace(message, last_error=outcome.error) if isinstance(message, TaskMessage) else message
            self._dead_letters.deposit(dead, outcome.error)
            self._queue.ack(message)

    def process_batch(self, messages: Iterable[TaskMessage]) -> BatchReport:
        """
        Deliver a batch and apply each message's disposition.

        Args:
            messages: Messages received from the queue

        Returns:
            BatchReport with outcomes in input order
        """
        messages = list(messages)
        report = BatchReport()
        if not messages:
            return report

        workers = max(1, min(self._workers, len(messages)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bridge") as pool:
            report.outcomes = list(pool.map(self.handle, messages))

        if self._ack_all and all(o.disposition == Disposition.ACK for o in report.outcomes):
            self._queue.ack_all(messages)
            report.acked_together = True
        else:
            for outcome in report.outcomes:
                try:
                    self._apply(outcome)
                except Exception as e:
                    # Left in flight; the queue re-delivers unacked messages
                    logger.error(
                        f"Failed to apply {outcome.disposition.value} to message "
                        f"{getattr(outcome.message, 'message_id', '?')}: {e}",
                        exc_info=True,
                    )

        logger.info(
            f"Batch of {len(messages)}: {report.acked} acked, "
            f"{report.retried} retried, {report.dead_lettered} dead-lettered"
        )
        return report

    def drain(
        self,
        max_batches: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> list[BatchReport]:
        """
        Process batches until the queue has nothing left to deliver.

        Waits (via sleep) for delayed re-deliveries to become visible.

        Args:
            max_batches: Stop after this many batches (None = until empty)
            sleep: Sleep function (injectable for tests)

        Returns:
            Reports of every processed batch
        """
        reports: list[BatchReport] = []
        while max_batches is None or len(reports) < max_batches:
            batch = self._queue.receive(self._batch_size)
            if batch:
                reports.append(self.process_batch(batch))
                continue
            wait = self._queue.next_visible_in()
            if wait is None:
                break
            sleep(wait)
        return reports
