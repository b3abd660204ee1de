"""Unit tests for EventBus."""

from cert_pipeline.domain.events import BrokerEvent, BrokerEventType
from cert_pipeline.service.events import EventBus


def _event(event_type, job_id="cert-1"):
    return BrokerEvent(type=event_type, timestamp=0, job_id=job_id)


def test_subscriber_receives_only_requested_types(mock_logger):
    """Test typed subscriptions filter events."""
    bus = EventBus(mock_logger)
    received = []
    bus.subscribe(received.append, BrokerEventType.COMPLETED)

    bus.publish(_event(BrokerEventType.ACTIVE))
    bus.publish(_event(BrokerEventType.COMPLETED))

    assert [e.type for e in received] == [BrokerEventType.COMPLETED]


def test_subscriber_without_types_receives_everything(mock_logger):
    """Test a catch-all subscription."""
    bus = EventBus(mock_logger)
    received = []
    bus.subscribe(received.append)

    bus.publish(_event(BrokerEventType.READY, job_id=None))
    bus.publish(_event(BrokerEventType.FAILED))

    assert len(received) == 2


def test_unsubscribe_stops_delivery(mock_logger):
    """Test the returned callable removes the subscription."""
    bus = EventBus(mock_logger)
    received = []
    unsubscribe = bus.subscribe(received.append, BrokerEventType.WAITING)

    unsubscribe()
    bus.publish(_event(BrokerEventType.WAITING))

    assert received == []


def test_failing_subscriber_does_not_break_others(mock_logger):
    """Test a raising handler is logged and skipped."""
    bus = EventBus(mock_logger)
    received = []

    def broken(event):
        raise ValueError("handler bug")

    bus.subscribe(broken)
    bus.subscribe(received.append)

    bus.publish(_event(BrokerEventType.STALLED))

    assert len(received) == 1
    mock_logger.error.assert_called_once()


def test_channel_queues_events(mock_logger):
    """Test channel-style consumption."""
    bus = EventBus(mock_logger)
    channel = bus.channel(BrokerEventType.PROGRESS)

    bus.publish(_event(BrokerEventType.PROGRESS))

    assert channel.get_nowait().type == BrokerEventType.PROGRESS
    assert channel.empty()
