import json
import threading
import unittest

from certificate_generator.models import ProgressEvent, Stage
from certificate_generator.progress import Heartbeat, ProgressBus, format_sse


def _event(stage: Stage, current: int, job_id: str = "job-1") -> ProgressEvent:
    return ProgressEvent(job_id, stage, current, 3, current * 33, f"step {current}")


class ProgressBusTests(unittest.TestCase):
    def test_delivers_events_in_order_until_terminal(self) -> None:
        bus = ProgressBus()
        subscription = bus.subscribe("job-1")
        bus.publish("job-1", _event(Stage.RENDERING, 1))
        bus.publish("job-1", _event(Stage.RENDERING, 2))
        bus.publish("job-1", _event(Stage.COMPLETE, 3))

        items = list(subscription.events(heartbeat_interval=0.05))

        self.assertEqual([item.current for item in items], [1, 2, 3])
        self.assertIs(items[-1].stage, Stage.COMPLETE)

    def test_late_subscriber_receives_latest_event(self) -> None:
        bus = ProgressBus()
        bus.publish("job-1", _event(Stage.RENDERING, 1))
        bus.publish("job-1", _event(Stage.COMPLETE, 3))

        with bus.subscribe("job-1") as subscription:
            items = list(subscription.events(heartbeat_interval=0.05))

        self.assertEqual(len(items), 1)
        self.assertIs(items[0].stage, Stage.COMPLETE)

    def test_idle_subscription_yields_heartbeat(self) -> None:
        bus = ProgressBus()
        with bus.subscribe("job-1") as subscription:
            item = next(subscription.events(heartbeat_interval=0.01))

        self.assertIsInstance(item, Heartbeat)
        self.assertEqual(item.job_id, "job-1")

    def test_events_are_scoped_to_their_job(self) -> None:
        bus = ProgressBus()
        subscription = bus.subscribe("job-1")
        bus.publish("job-2", _event(Stage.COMPLETE, 3, job_id="job-2"))
        bus.publish("job-1", _event(Stage.COMPLETE, 3))

        items = list(subscription.events(heartbeat_interval=0.05))

        self.assertEqual([item.job_id for item in items], ["job-1"])

    def test_stalled_subscriber_is_dropped_without_affecting_others(self) -> None:
        bus = ProgressBus(subscriber_queue_size=1)
        stalled = bus.subscribe("job-1")
        active = bus.subscribe("job-1")
        active_events = active.events(heartbeat_interval=1.0)

        bus.publish("job-1", _event(Stage.RENDERING, 1))
        self.assertEqual(next(active_events).current, 1)
        bus.publish("job-1", _event(Stage.RENDERING, 2))

        self.assertTrue(stalled.closed)
        self.assertEqual(next(active_events).current, 2)
        self.assertEqual(bus.subscriber_count("job-1"), 1)

    def test_close_unsubscribes(self) -> None:
        bus = ProgressBus()
        subscription = bus.subscribe("job-1")
        subscription.close()

        self.assertEqual(bus.subscriber_count("job-1"), 0)
        self.assertEqual(list(subscription.events(heartbeat_interval=0.01)), [])

    def test_forget_drops_history_and_subscribers(self) -> None:
        bus = ProgressBus()
        subscription = bus.subscribe("job-1")
        bus.publish("job-1", _event(Stage.RENDERING, 1))

        bus.forget("job-1")

        self.assertIsNone(bus.last_event("job-1"))
        self.assertTrue(subscription.closed)

    def test_concurrent_subscribe_never_sees_an_event_twice(self) -> None:
        bus = ProgressBus(subscriber_queue_size=5000)
        done = threading.Event()

        def publisher() -> None:
            for current in range(1, 2001):
                bus.publish("job-1", _event(Stage.RENDERING, current))
            done.set()

        thread = threading.Thread(target=publisher)
        subscriptions = []
        thread.start()
        while not done.is_set() and len(subscriptions) < 200:
            subscriptions.append(bus.subscribe("job-1"))
        thread.join()

        for subscription in subscriptions:
            subscription.close()
            currents = []
            while True:
                item = subscription._queue.get_nowait()
                if not isinstance(item, ProgressEvent):
                    break
                currents.append(item.current)
            self.assertEqual(currents, sorted(set(currents)))


class FormatSseTests(unittest.TestCase):
    def test_progress_frame(self) -> None:
        frame = format_sse(_event(Stage.RENDERING, 1))

        self.assertTrue(frame.startswith(b"event: progress\ndata: "))
        self.assertTrue(frame.endswith(b"\n\n"))
        payload = json.loads(frame.split(b"data: ", 1)[1])
        self.assertEqual(payload["jobId"], "job-1")
        self.assertEqual(payload["stage"], "rendering")

    def test_heartbeat_frame(self) -> None:
        frame = format_sse(Heartbeat("job-1", timestamp=5.0))

        self.assertEqual(frame, b'event: heartbeat\ndata: {"jobId": "job-1", "timestamp": 5.0}\n\n')


if __name__ == "__main__":
    unittest.main()
