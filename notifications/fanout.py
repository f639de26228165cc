"""Best-effort, non-blocking event fanout to live subscribers."""
import itertools
import queue
import threading

from utils.context import RuntimeContext

_STOP = object()


class Subscription:
    """One subscriber: a channel, its bounded queue and a delivery thread.

    A slow channel only backs up its own queue; once that is full new
    events for it are dropped.
    """

    def __init__(self, channel, name, queue_size, logger):
        self.channel = channel
        self.name = name
        self.logger = logger
        self.delivered = 0
        self.dropped = 0
        self.failed = 0
        self._queue = queue.Queue(maxsize=queue_size)
        self._thread = threading.Thread(target=self._run, name=f"fanout-{name}", daemon=True)
        self._thread.start()

    def offer(self, event):
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            self.logger.warning(f"Subscriber {self.name} is behind, dropped {event.kind.value}")
            return False

    def _run(self):
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self.channel.send(event)
                self.delivered += 1
            except Exception as e:
                self.failed += 1
                self.logger.warning(f"Channel {self.name} delivery error: {e}")
            finally:
                self._queue.task_done()

    def drain(self, timeout=None):
        """Wait until every queued event was handed to the channel."""
        done = threading.Event()
        waiter = threading.Thread(target=lambda: (self._queue.join(), done.set()), daemon=True)
        waiter.start()
        return done.wait(timeout)

    def stop(self, timeout=5):
        # blocking put: the stop marker must not be dropped
        self._queue.put(_STOP)
        self._thread.join(timeout=timeout)

    @property
    def alive(self):
        return self._thread.is_alive()


class NotificationFanout:
    """Publishes events to every current subscriber without blocking.

    There is no durable queue: a subscriber only sees events published
    while it is subscribed.
    """

    def __init__(self, context=None, queue_size=None):
        self.context = context or RuntimeContext()
        self.logger = self.context.get_logger("notifications.fanout")
        self.queue_size = queue_size or self.context.section("notifications").get("queue_size", 1000)
        self._subscriptions = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.published = 0

    def subscribe(self, channel, name=None):
        name = name or f"{type(channel).__name__}-{next(self._ids)}"
        sub = Subscription(channel, name, self.queue_size, self.logger)
        with self._lock:
            if name in self._subscriptions:
                sub.stop()
                raise ValueError(f"Subscriber name already in use: {name}")
            self._subscriptions[name] = sub
        self.logger.debug(f"Subscriber {name} joined")
        return sub

    def unsubscribe(self, subscription):
        with self._lock:
            removed = self._subscriptions.pop(subscription.name, None)
        if removed is not None:
            removed.stop()
            self.logger.debug(f"Subscriber {subscription.name} left")
        return removed is not None

    def publish(self, event):
        """Queue the event for every subscriber. Never raises, never blocks."""
        with self._lock:
            subscribers = list(self._subscriptions.values())
        self.published += 1
        return sum(1 for sub in subscribers if sub.offer(event))

    def subscribers(self):
        with self._lock:
            return list(self._subscriptions.values())

    def flush(self, timeout=5):
        return all(sub.drain(timeout) for sub in self.subscribers())

    def close(self, timeout=5):
        """Deliver what is queued, then stop every subscriber."""
        self.flush(timeout)
        with self._lock:
            subscribers = list(self._subscriptions.values())
            self._subscriptions.clear()
        for sub in subscribers:
            sub.stop(timeout)
