"""Event fanout and subscriber channels."""
from notifications.fanout import NotificationFanout, Subscription
from notifications.channels import EventChannel, ConsoleChannel, FileChannel, TransportChannel, CounterChannel
