"""Unit Tests for EventBus and memory events

Tests: subscribe/publish, wildcard subscriptions, subscriber isolation, event payloads
"""
import threading
from unittest.mock import Mock

import pytest

from mnemos.event_bus import EventBus
from mnemos.events import (
    EVENT_TYPES,
    ContradictionDetectedEvent,
    DecayCompletedEvent,
    MemoryRecalledEvent,
    MemoryStoredEvent,
    ReflectionCompletedEvent,
)


class TestEventBusBasics:
    """Tests for core EventBus functionality."""

    def test_subscribe_and_publish(self):
        """Subscribers of the event type receive the event."""
        bus = EventBus()
        callback = Mock()
        bus.subscribe('memory.stored', callback)

        event = MemoryStoredEvent(memory_id='m1', user_id='u1', content='hi', sector='semantic')
        bus.publish(event)

        callback.assert_called_once_with(event)

    def test_other_types_not_delivered(self):
        """Subscribers only see their own event type."""
        bus = EventBus()
        callback = Mock()
        bus.subscribe('memory.recalled', callback)

        bus.publish(MemoryStoredEvent(memory_id='m1', user_id='u1', content='hi', sector='semantic'))

        callback.assert_not_called()

    def test_wildcard_receives_everything(self):
        """'*' subscribers see every event."""
        bus = EventBus()
        callback = Mock()
        bus.subscribe('*', callback)

        bus.publish(MemoryStoredEvent(memory_id='m1', user_id='u1', content='hi', sector='semantic'))
        bus.publish(DecayCompletedEvent(user_id='u1', archived=1, decayed=2, reinforced=0))

        assert callback.call_count == 2

    def test_unsubscribe(self):
        """Unsubscribed callbacks stop receiving events."""
        bus = EventBus()
        callback = Mock()
        bus.subscribe('memory.stored', callback)

        assert bus.unsubscribe('memory.stored', callback) is True
        assert bus.unsubscribe('memory.stored', callback) is False

        bus.publish(MemoryStoredEvent(memory_id='m1', user_id='u1', content='hi', sector='semantic'))
        callback.assert_not_called()
        assert bus.subscriber_count() == 0

    def test_subscriber_count(self):
        """subscriber_count per type and in total."""
        bus = EventBus()
        bus.subscribe('memory.stored', Mock())
        bus.subscribe('memory.stored', Mock())
        bus.subscribe('memory.recalled', Mock())

        assert bus.subscriber_count('memory.stored') == 2
        assert bus.subscriber_count('memory.archived') == 0
        assert bus.subscriber_count() == 3

        bus.clear()
        assert bus.subscriber_count() == 0


class TestEventBusErrorHandling:
    """A failing subscriber never breaks the publisher or other subscribers."""

    def test_failing_callback_isolated(self):
        bus = EventBus()
        bad = Mock(side_effect=RuntimeError("boom"))
        good = Mock()
        bus.subscribe('memory.stored', bad)
        bus.subscribe('memory.stored', good)

        bus.publish(MemoryStoredEvent(memory_id='m1', user_id='u1', content='hi', sector='semantic'))

        bad.assert_called_once()
        good.assert_called_once()

    def test_event_without_type_ignored(self):
        bus = EventBus()
        callback = Mock()
        bus.subscribe('*', callback)

        bus.publish(object())

        callback.assert_not_called()

    def test_concurrent_publish(self):
        """Publishing from several threads delivers every event."""
        bus = EventBus()
        received = []
        lock = threading.Lock()

        def record(event):
            with lock:
                received.append(event.memory_id)

        bus.subscribe('memory.stored', record)

        def publish_many(prefix):
            for i in range(50):
                bus.publish(MemoryStoredEvent(memory_id=f'{prefix}{i}', user_id='u1',
                                              content='x', sector='semantic'))

        threads = [threading.Thread(target=publish_many, args=(p,)) for p in 'abcd']
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(received) == 200


class TestEventPayloads:
    """to_dict carries the type, the fields and a timestamp."""

    def test_contradiction_event(self):
        event = ContradictionDetectedEvent(old_memory_id='old', new_memory_id='new', user_id='u1',
                                           similarity=0.85, entity_id='ent_u1_topic_rust')
        data = event.to_dict()

        assert data['event_type'] == 'memory.contradiction_detected'
        assert data['old_memory_id'] == 'old'
        assert data['entity_id'] == 'ent_u1_topic_rust'
        assert data['similarity'] == pytest.approx(0.85)
        assert 'timestamp' in data

    def test_recalled_event(self):
        event = MemoryRecalledEvent(user_id='u1', query='tea', result_count=1,
                                    top_results=[{'memory_id': 'm1', 'strength': 0.9}])
        data = event.to_dict()

        assert data['event_type'] == 'memory.recalled'
        assert data['top_results'][0]['memory_id'] == 'm1'


class TestEventBusTargets:
    """Subscriptions by event class, namespace pattern and user."""

    def test_subscribe_by_event_class(self):
        bus = EventBus()
        callback = Mock()
        bus.subscribe(MemoryStoredEvent, callback)

        event = MemoryStoredEvent(memory_id='m1', user_id='u1', content='hi', sector='semantic')
        bus.publish(event)

        callback.assert_called_once_with(event)
        assert bus.subscriber_count('memory.stored') == 1
        assert bus.unsubscribe('memory.stored', callback) is True

    def test_namespace_pattern(self):
        """'maintenance.*' sees job events only."""
        bus = EventBus()
        callback = Mock()
        bus.subscribe('maintenance.*', callback)

        bus.publish(DecayCompletedEvent(user_id='u1', archived=0, decayed=1, reinforced=0))
        bus.publish(ReflectionCompletedEvent(user_id='u1', reflected=1, compressed=5))
        bus.publish(MemoryStoredEvent(memory_id='m1', user_id='u1', content='hi', sector='semantic'))

        assert [c.args[0].event_type for c in callback.call_args_list] == [
            'maintenance.decay_completed', 'maintenance.reflection_completed']

    def test_user_scoped_subscription(self):
        bus = EventBus()
        callback = Mock()
        bus.subscribe('*', callback, user_id='alice')

        bus.publish(MemoryStoredEvent(memory_id='m1', user_id='bob', content='hi', sector='semantic'))
        bus.publish(MemoryStoredEvent(memory_id='m2', user_id='alice', content='hi', sector='semantic'))

        assert [c.args[0].memory_id for c in callback.call_args_list] == ['m2']

    @pytest.mark.parametrize('target', ['memory.deleted', 'billing.*', 'memory', dict])
    def test_unknown_targets_rejected(self, target):
        with pytest.raises(ValueError):
            EventBus().subscribe(target, Mock())

    def test_publish_reports_successful_deliveries(self):
        bus = EventBus()
        bus.subscribe('memory.stored', Mock())
        bus.subscribe('memory.*', Mock(side_effect=RuntimeError("boom")))

        delivered = bus.publish(MemoryStoredEvent(memory_id='m1', user_id='u1', content='hi',
                                                  sector='semantic'))

        assert delivered == 1

    def test_registry_covers_every_event(self):
        assert set(EVENT_TYPES) == {
            'memory.stored', 'memory.reinforced', 'memory.contradiction_detected',
            'memory.recalled', 'memory.archived',
            'maintenance.decay_completed', 'maintenance.reflection_completed',
        }
