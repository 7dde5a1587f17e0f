"""
Metrics bridge between the rebalance worker process and the main process.

Components never touch prometheus objects directly; they call the
module-level inc/set/observe helpers which forward to the active sink:

- RegistrySink (main process): applies to the prometheus registry
- QueueSink (worker process): posts MetricMessage dicts on the event queue,
  the supervisor applies them on the main side
"""

from typing import Any, Dict, Optional

from yieldkeeper.metrics import registry
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)

MetricMessage = Dict[str, Any]


def make_metric_message(
    name: str,
    action: str,
    value: float,
    labels: Optional[Dict[str, str]] = None
) -> MetricMessage:
    return {
        'type': 'metric',
        'name': name,
        'action': action,
        'value': value,
        'labels': labels or {},
    }


def apply_metric_message(msg: MetricMessage) -> bool:
    """Apply a metric message received from the worker"""
    return registry.apply(msg['name'], msg['action'], msg['value'], msg.get('labels') or None)


class RegistrySink:
    """Writes straight into the prometheus registry"""

    def emit(self, name: str, action: str, value: float, labels: Optional[Dict[str, str]]) -> None:
        registry.apply(name, action, value, labels)


class QueueSink:
    """Forwards metrics over a multiprocessing queue (one-way, never blocks)"""

    def __init__(self, queue):
        self.queue = queue

    def emit(self, name: str, action: str, value: float, labels: Optional[Dict[str, str]]) -> None:
        try:
            self.queue.put_nowait(make_metric_message(name, action, value, labels))
        except Exception as e:
            # A full or closed queue must not break the rebalance cycle
            logger.debug(f"Dropped metric {name}: {e}")


_sink = RegistrySink()


def set_sink(sink) -> None:
    global _sink
    _sink = sink


def get_sink():
    return _sink


def inc(name: str, labels: Optional[Dict[str, str]] = None, value: float = 1) -> None:
    _sink.emit(name, 'inc', value, labels)


def set(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    _sink.emit(name, 'set', value, labels)


def observe(name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
    _sink.emit(name, 'observe', value, labels)
