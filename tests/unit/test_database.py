import tempfile
import unittest
from pathlib import Path

from snapsolve.agents.state import STATUS_SOLVED, ChatMessage, Problem
from snapsolve.storage.database import ProblemDatabase, StorageError
from snapsolve.storage.images import ImageStore


class ProblemDatabaseTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.db = ProblemDatabase(str(Path(self._tmpdir.name) / "nested" / "snapsolve.db"))

    async def asyncTearDown(self) -> None:
        self.db.close()
        self._tmpdir.cleanup()

    async def test_save_get_update(self) -> None:
        problem = Problem(original_input="2x + 5 = 13", extracted_text="2x + 5 = 13")
        await self.db.save_problem(problem)

        problem.solution = "x = 4"
        problem.status = STATUS_SOLVED
        await self.db.update_problem(problem)

        loaded = await self.db.get_problem(problem.id)
        self.assertEqual(loaded, problem)
        self.assertIsNone(await self.db.get_problem("missing"))

    async def test_update_unknown_problem_raises(self) -> None:
        with self.assertRaises(StorageError):
            await self.db.update_problem(Problem(original_input="ghost"))

    async def test_list_recent_newest_first_and_search(self) -> None:
        first = Problem(original_input="area of a circle")
        second = Problem(original_input="slope of a line", solution="m = 3")
        await self.db.save_problem(first)
        await self.db.save_problem(second)

        recent = await self.db.list_recent(10)
        self.assertEqual([item.id for item in recent], [second.id, first.id])
        self.assertEqual(len(await self.db.list_recent(1)), 1)

        self.assertEqual([item.id for item in await self.db.search("circle")], [first.id])
        self.assertEqual([item.id for item in await self.db.search("m = 3")], [second.id])
        self.assertEqual(await self.db.search("nothing like this"), [])

    async def test_chat_messages_ordered_and_cascade_deleted(self) -> None:
        problem = Problem(original_input="1+1")
        await self.db.save_problem(problem)
        question = ChatMessage(problem_id=problem.id, message="why?", is_user=True)
        answer = ChatMessage(problem_id=problem.id, message="because", is_user=False)
        await self.db.save_chat_message(question)
        await self.db.save_chat_message(answer)

        messages = await self.db.list_chat_messages(problem.id)
        self.assertEqual([(item.is_user, item.message) for item in messages], [(True, "why?"), (False, "because")])

        self.assertTrue(await self.db.delete_problem(problem.id))
        self.assertFalse(await self.db.delete_problem(problem.id))
        self.assertEqual(await self.db.list_chat_messages(problem.id), [])

    async def test_stats(self) -> None:
        await self.db.save_problem(Problem(original_input="a", status=STATUS_SOLVED))
        pending = Problem(original_input="b")
        await self.db.save_problem(pending)
        await self.db.save_chat_message(ChatMessage(problem_id=pending.id, message="hi", is_user=True))
        self.assertEqual(
            await self.db.stats(),
            {"total_problems": 2, "solved_problems": 1, "total_messages": 1},
        )

    async def test_reopen_keeps_schema_and_rows(self) -> None:
        problem = Problem(original_input="persisted")
        await self.db.save_problem(problem)
        self.db.close()
        self.db = ProblemDatabase(self.db.database_path)
        self.assertIsNotNone(await self.db.get_problem(problem.id))


class ImageStoreTestCase(unittest.TestCase):
    def test_write_read_remove(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store = ImageStore(str(Path(tmpdir) / "images"))
            path = store.write("p1", b"\xff\xd8data")
            self.assertTrue(path.endswith("p1_image.jpg"))
            self.assertEqual(store.read(path), b"\xff\xd8data")
            store.remove(path)
            self.assertIsNone(store.read(path))
            store.remove(path)
            store.remove(None)


if __name__ == "__main__":
    unittest.main()
