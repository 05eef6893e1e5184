import unittest

from snapsolve.api.notifications import (
    KIND_COMPLETED,
    KIND_FAILED,
    KIND_PROGRESS,
    KIND_PROGRESS_CANCELLED,
    NotificationHub,
)


class NotificationHubTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_subscribers_receive_in_order(self) -> None:
        hub = NotificationHub()
        queue = hub.subscribe()
        hub.notify_progress("Algebra Problem", "Solving in background...", "p1")
        hub.notify_completed("Math Problem Solved!", "x = 4", "p1")

        first = await queue.get()
        second = await queue.get()
        self.assertEqual((first.kind, first.body, first.problem_id), (KIND_PROGRESS, "Solving in background...", "p1"))
        self.assertEqual((second.kind, second.body), (KIND_COMPLETED, "Answer: x = 4"))

    async def test_title_and_body_are_truncated(self) -> None:
        hub = NotificationHub()
        hub.notify_failed("t" * 80, "e" * 300, "p1")
        item = hub.recent()[-1]
        self.assertEqual(item.kind, KIND_FAILED)
        self.assertEqual(len(item.title), 50)
        self.assertEqual(len(item.body), 100)
        self.assertTrue(item.body.endswith("..."))

    async def test_title_limit_is_configurable(self) -> None:
        hub = NotificationHub(title_max_chars=10)
        hub.notify_progress("Geometry of circles", "Solving...", "p1")
        self.assertEqual(hub.recent()[-1].title, "Geometr...")

    async def test_cancel_progress_only_after_progress(self) -> None:
        hub = NotificationHub()
        hub.cancel_progress()
        self.assertEqual(hub.recent(), [])

        hub.notify_progress("title", "status", "p1")
        self.assertTrue(hub.has_progress)
        hub.cancel_progress()
        hub.cancel_progress()
        kinds = [item.kind for item in hub.recent()]
        self.assertEqual(kinds, [KIND_PROGRESS, KIND_PROGRESS_CANCELLED])
        self.assertEqual(hub.recent()[-1].problem_id, "p1")
        self.assertFalse(hub.has_progress)

    async def test_unsubscribed_queue_stops_receiving(self) -> None:
        hub = NotificationHub()
        queue = hub.subscribe()
        hub.unsubscribe(queue)
        hub.notify_failed("title", "error")
        self.assertTrue(queue.empty())

    async def test_history_is_bounded_and_full_queues_drop(self) -> None:
        hub = NotificationHub(history_size=3, queue_size=1)
        queue = hub.subscribe()
        for index in range(5):
            hub.notify_failed("title", "error {}".format(index))
        self.assertEqual([item.body for item in hub.recent()], ["error 2", "error 3", "error 4"])
        self.assertEqual(hub.recent(1)[0].body, "error 4")
        self.assertEqual(queue.qsize(), 1)
        self.assertEqual((await queue.get()).body, "error 0")


if __name__ == "__main__":
    unittest.main()
