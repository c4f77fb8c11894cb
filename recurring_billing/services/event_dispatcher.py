"""Lifecycle event publishing.

Responsibilities:
- Build BillingEvent messages keyed by (payer, product_id)
- Deliver them to an in-memory log or a Google Cloud Pub/Sub topic
- Never let a delivery failure reach the billing operation that emitted it
"""

from threading import RLock
from typing import Any, Dict, List, Optional

from google.cloud import pubsub_v1

from recurring_billing.logging_config import get_logger
from recurring_billing.models.events import BillingEvent, EventTopic
from recurring_billing.models.subscription import SubscriptionKey
from recurring_billing.services.clock import Clock, get_clock

logger = get_logger(__name__)


class EventDispatcher:
    """Best-effort event sink.

    Subclasses implement `_deliver`; `notify` wraps it so that no exception
    escapes into the caller.

    Args:
        clock: Timestamp source for event_time (defaults to global clock)
        enabled: If False, events are dropped
    """

    def __init__(self, clock: Optional[Clock] = None, enabled: bool = True):
        self._lock = RLock()
        self._clock = clock or get_clock()
        self._enabled = enabled

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
            self,
            topic: EventTopic,
            key: SubscriptionKey,
            payload: Optional[Dict[str, Any]] = None,
            event_time: Optional[int] = None,
    ) -> bool:
        """Publish a lifecycle event.

        Args:
            topic: Event topic
            key: Subscription key the event is about
            payload: Topic-specific data
            event_time: Time the change happened (defaults to this dispatcher's clock)

        Returns:
            True if delivered, False if disabled or delivery failed
        """
        if not self.is_enabled():
            logger.debug("event_dispatcher_disabled", topic=topic.value)
            return False

        try:
            event = BillingEvent(
                topic=topic,
                payer=key.payer,
                product_id=key.product_id,
                event_time=self._clock.now() if event_time is None else event_time,
                payload=payload or {},
            )
            with self._lock:
                self._deliver(event)

            logger.info(
                "billing_event_published",
                topic=topic.value,
                payer=key.payer,
                product_id=key.product_id,
            )
            return True

        except Exception as e:
            logger.error(
                "billing_event_publish_failed",
                topic=topic.value,
                payer=key.payer,
                product_id=key.product_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return False

    def _deliver(self, event: BillingEvent) -> None:
        raise NotImplementedError

    def shutdown(self) -> None:
        """Release backend resources."""
        pass


class InMemoryEventDispatcher(EventDispatcher):
    """Keeps every delivered event in memory, in emission order."""

    def __init__(self, clock: Optional[Clock] = None, enabled: bool = True):
        super().__init__(clock=clock, enabled=enabled)
        self._events: List[BillingEvent] = []

    def _deliver(self, event: BillingEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> List[BillingEvent]:
        with self._lock:
            return list(self._events)

    def events_for(self, key: SubscriptionKey) -> List[BillingEvent]:
        with self._lock:
            return [
                e for e in self._events
                if e.payer == key.payer and e.product_id == key.product_id
            ]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class PubSubEventDispatcher(EventDispatcher):
    """Publishes events as JSON to a Google Cloud Pub/Sub topic.

    Args:
        project_id: GCP project ID
        topic_name: Topic name (without project path)
        publish_timeout: Seconds to wait for each publish to be acknowledged
        clock: Timestamp source for event_time
        enabled: If False, events are dropped and no client is created
    """

    def __init__(
            self,
            project_id: str,
            topic_name: str,
            publish_timeout: float = 5.0,
            clock: Optional[Clock] = None,
            enabled: bool = True,
    ):
        super().__init__(clock=clock, enabled=enabled)
        self._publisher: Optional[pubsub_v1.PublisherClient] = None
        self._topic_path: Optional[str] = None
        self._publish_timeout = publish_timeout

        if self._enabled:
            self._initialize(project_id, topic_name)

    def _initialize(self, project_id: str, topic_name: str) -> None:
        """Create the publisher client and make sure the topic exists."""
        try:
            self._publisher = pubsub_v1.PublisherClient()
            self._topic_path = self._publisher.topic_path(project_id, topic_name)
            self._ensure_topic_exists()

            logger.info(
                "event_dispatcher_initialized",
                project_id=project_id,
                topic=topic_name,
                topic_path=self._topic_path,
            )
        except Exception as e:
            logger.error(
                "event_dispatcher_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._enabled = False

    def _ensure_topic_exists(self) -> None:
        try:
            self._publisher.get_topic(request={"topic": self._topic_path})
            logger.info("pubsub_topic_exists", topic_path=self._topic_path)
        except Exception:
            topic = self._publisher.create_topic(request={"name": self._topic_path})
            logger.info("pubsub_topic_created", topic_path=topic.name)

    def is_enabled(self) -> bool:
        return self._enabled and self._publisher is not None

    def _deliver(self, event: BillingEvent) -> None:
        if not self._publisher or not self._topic_path:
            raise RuntimeError("Publisher is not initialized")

        future = self._publisher.publish(
            self._topic_path,
            event.model_dump_json().encode("utf-8"),
            # Attributes for subscriber-side filtering
            topic=event.topic.value,
            payer=event.payer,
            product_id=event.product_id,
        )
        message_id = future.result(timeout=self._publish_timeout)
        logger.debug("pubsub_message_published", message_id=message_id)

    def shutdown(self) -> None:
        with self._lock:
            if self._publisher:
                logger.info("event_dispatcher_shutting_down")
                self._publisher = None
                self._topic_path = None


_event_dispatcher: Optional[EventDispatcher] = None
_dispatcher_lock = RLock()


def create_event_dispatcher(config=None, clock: Optional[Clock] = None) -> EventDispatcher:
    """Build the dispatcher selected by the billing.event_backend setting."""
    if config is None:
        from recurring_billing.config import get_config
        config = get_config()

    if config.event_backend == "pubsub":
        return PubSubEventDispatcher(
            project_id=config.pubsub_project_id,
            topic_name=config.pubsub_topic,
            publish_timeout=config.pubsub_publish_timeout,
            clock=clock,
            enabled=config.events_enabled,
        )
    return InMemoryEventDispatcher(clock=clock, enabled=config.events_enabled)


def get_event_dispatcher() -> EventDispatcher:
    """Get or create the singleton EventDispatcher instance."""
    global _event_dispatcher
    if _event_dispatcher is None:
        with _dispatcher_lock:
            if _event_dispatcher is None:
                _event_dispatcher = create_event_dispatcher()
    return _event_dispatcher


def reset_event_dispatcher() -> None:
    """Reset the singleton EventDispatcher instance (for testing)."""
    global _event_dispatcher

    with _dispatcher_lock:
        if _event_dispatcher is not None:
            _event_dispatcher.shutdown()
            _event_dispatcher = None
