import asyncio
import os
import unittest
from typing import Optional
from unittest.mock import patch

from mocks.collaborators import RecordingBackground
from mocks.fake_engine import FakeEngine, SOLUTION_REPLY
from mocks.harness import PNG_BYTES, OrchestratorTestCase, wait_for_stream
from snapsolve.agents.lifecycle import LifecyclePhase, ResumeOutcome
from snapsolve.agents.orchestrator import BACKGROUND_STATUS, COMPLETED_TITLE, IMAGE_ORIGINAL_INPUT, SolvingOrchestrator
from snapsolve.agents.state import STATUS_ERROR, STATUS_SOLVED, STATUS_SOLVING
from snapsolve.api.runtime import BackgroundTaskRunner
from snapsolve.errors import QueueFullError, SolverError, SolvingFailed
from snapsolve.llm.prompts import EXTRACTION_PROMPT


class LiveStreamBackgroundTestCase(OrchestratorTestCase):
    def make_engine(self) -> FakeEngine:
        self.gate = asyncio.Event()
        return FakeEngine(solve_gate=self.gate)

    async def _wait_until_streaming(self) -> str:
        problem_id = await wait_for_stream(self.orchestrator)
        if problem_id is None:
            self.fail("solve never started streaming")
        return problem_id

    async def test_resume_during_live_stream_keeps_flags(self) -> None:
        task = asyncio.create_task(self.orchestrator.solve_from_text("Solve for x: 2x + 3 = 7"))
        problem_id = await self._wait_until_streaming()

        phase = await self.orchestrator.continue_in_background(problem_id)
        self.assertEqual(phase, LifecyclePhase.BACKGROUND)
        self.assertEqual(self.notifier.events[-1][0], "progress")
        self.assertEqual(self.notifier.events[-1][2], BACKGROUND_STATUS)

        resumed_tokens = []
        result = await self.orchestrator.resume_from_background(problem_id, resumed_tokens.append)
        self.assertEqual(result.outcome, ResumeOutcome.CONTINUING)
        self.assertEqual(result.phase, LifecyclePhase.BACKGROUND)
        self.assertIsNone(result.status)
        self.assertEqual(result.buffered_text, SOLUTION_REPLY[:7])
        self.assertEqual(self.orchestrator.lifecycle.phase_of(problem_id), LifecyclePhase.BACKGROUND)
        self.assertEqual((await self.orchestrator.get_problem(problem_id)).status, STATUS_SOLVING)
        self.assertTrue(self.orchestrator.is_currently_solving(problem_id))

        self.gate.set()
        problem = await task

        self.assertEqual(problem.status, STATUS_SOLVED)
        self.assertEqual(result.buffered_text + "".join(resumed_tokens), SOLUTION_REPLY)
        completed = [event for event in self.notifier.events if event[0] == "completed"]
        self.assertEqual(completed, [("completed", COMPLETED_TITLE, "x = 2", problem_id)])

        later = await self.orchestrator.resume_from_background(problem_id)
        self.assertEqual(later.outcome, ResumeOutcome.COMPLETED)
        self.assertEqual(later.phase, LifecyclePhase.FOREGROUND)
        self.assertEqual(later.status, STATUS_SOLVED)
        self.assertEqual(self.notifier.kinds().count("completed"), 1)

    async def test_solve_is_not_interrupted_by_background_mode(self) -> None:
        task = asyncio.create_task(self.orchestrator.solve_from_text("Solve for x: 2x + 3 = 7"))
        problem_id = await self._wait_until_streaming()
        await self.orchestrator.continue_in_background(problem_id)
        self.gate.set()
        problem = await task
        self.assertEqual(problem.solution, "x = 2")

    async def test_background_mode_is_tracked_per_problem(self) -> None:
        self.engine.solve_gate = None
        solved = await self.orchestrator.solve_from_text("Solve for x: 2x + 3 = 7")
        self.engine.solve_gate = self.gate
        task = asyncio.create_task(self.orchestrator.solve_from_text("Solve for y: 3y = 9"))
        running_id = await self._wait_until_streaming()
        self.assertNotEqual(running_id, solved.id)

        await self.orchestrator.continue_in_background(solved.id)
        await self.orchestrator.continue_in_background(running_id)
        result = await self.orchestrator.resume_from_background(solved.id)

        self.assertEqual(result.outcome, ResumeOutcome.COMPLETED)
        self.assertEqual(result.phase, LifecyclePhase.FOREGROUND)
        self.assertTrue(self.orchestrator.lifecycle.is_background(running_id))
        self.assertEqual(self.orchestrator.lifecycle.background_ids, [running_id])

        self.gate.set()
        await task
        completed = [event for event in self.notifier.events if event[0] == "completed" and event[3] == running_id]
        self.assertEqual(len(completed), 1)


class CancelledSolveTestCase(OrchestratorTestCase):
    def make_engine(self) -> FakeEngine:
        self.gate = asyncio.Event()
        return FakeEngine(solve_gate=self.gate)

    async def _wait_for_stream(self, orchestrator: SolvingOrchestrator, problem_id: Optional[str] = None) -> str:
        streaming = await wait_for_stream(orchestrator, problem_id)
        if streaming is None:
            self.fail("solve never started streaming")
        return streaming

    async def test_cancelled_solve_ends_in_error(self) -> None:
        task = asyncio.create_task(self.orchestrator.solve_from_text("Solve for x: 2x + 3 = 7"))
        problem_id = await self._wait_for_stream(self.orchestrator)

        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertEqual((await self.orchestrator.get_problem(problem_id)).status, STATUS_ERROR)
        self.assertEqual(self.db.statuses(problem_id)[-1], STATUS_ERROR)
        self.assertEqual(len(self.gateway.pool), 0)
        self.assertFalse(self.orchestrator.is_currently_solving(problem_id))
        self.assertFalse(self.orchestrator.streams.is_live(problem_id))

    async def test_runner_shutdown_fails_the_running_job(self) -> None:
        runner = BackgroundTaskRunner(max_queue_size=4)
        orchestrator = self.build_orchestrator(background=runner)
        runner.start(orchestrator.run_scheduled)
        submitted = await orchestrator.submit_text_in_background("Solve for x: 2x + 3 = 7")
        problem_id = submitted["problem_id"]
        await self._wait_for_stream(orchestrator, problem_id)

        await runner.stop()

        self.assertFalse(runner.is_running)
        self.assertEqual((await orchestrator.get_problem(problem_id)).status, STATUS_ERROR)
        self.assertEqual(len(self.gateway.pool), 0)
        self.assertFalse(orchestrator.is_currently_solving(problem_id))


class LifecycleReentrancyTestCase(OrchestratorTestCase):
    async def test_overlapping_resumes_reconcile_once(self) -> None:
        problem = await self.orchestrator.solve_from_text("Solve for x: 2x + 3 = 7")
        await self.orchestrator.continue_in_background(problem.id)

        first, second = await asyncio.gather(
            self.orchestrator.resume_from_background(problem.id),
            self.orchestrator.resume_from_background(problem.id),
        )

        self.assertEqual((first.outcome, second.outcome), (ResumeOutcome.COMPLETED, ResumeOutcome.COMPLETED))
        self.assertEqual(self.orchestrator.lifecycle.phase_of(problem.id), LifecyclePhase.FOREGROUND)
        self.assertEqual(self.notifier.kinds().count("completed"), 1)

    async def test_background_and_resume_overlap(self) -> None:
        problem = await self.orchestrator.solve_from_text("Solve for x: 2x + 3 = 7")

        phase, result = await asyncio.gather(
            self.orchestrator.continue_in_background(problem.id),
            self.orchestrator.resume_from_background(problem.id),
        )

        self.assertEqual(phase, LifecyclePhase.BACKGROUND)
        self.assertEqual(result.outcome, ResumeOutcome.COMPLETED)
        self.assertEqual(self.orchestrator.lifecycle.phase_of(problem.id), LifecyclePhase.FOREGROUND)
        self.assertFalse(self.orchestrator.lifecycle.is_background())

    async def test_store_error_while_entering_background_rolls_back(self) -> None:
        problem = await self.orchestrator.solve_from_text("Solve for x: 2x + 3 = 7")
        self.db.failing_reads = 1

        with self.assertRaises(OSError):
            await self.orchestrator.continue_in_background(problem.id)

        self.assertEqual(self.orchestrator.lifecycle.phase_of(problem.id), LifecyclePhase.FOREGROUND)
        self.assertFalse(self.orchestrator.lifecycle.is_background(problem.id))
        self.assertEqual(await self.orchestrator.continue_in_background(problem.id), LifecyclePhase.BACKGROUND)
        result = await self.orchestrator.resume_from_background(problem.id)
        self.assertEqual(result.outcome, ResumeOutcome.COMPLETED)
        self.assertEqual(result.phase, LifecyclePhase.FOREGROUND)

    async def test_failed_reconciliation_keeps_background_mode(self) -> None:
        problem = await self.orchestrator.solve_from_text("Solve for x: 2x + 3 = 7")
        await self.orchestrator.continue_in_background(problem.id)

        with patch.object(self.notifier, "cancel_progress", side_effect=RuntimeError("notifier down")):
            with self.assertRaises(RuntimeError):
                await self.orchestrator.resume_from_background(problem.id)

        self.assertEqual(self.orchestrator.lifecycle.phase_of(problem.id), LifecyclePhase.BACKGROUND)
        result = await self.orchestrator.resume_from_background(problem.id)
        self.assertEqual(result.outcome, ResumeOutcome.COMPLETED)
        self.assertEqual(result.phase, LifecyclePhase.FOREGROUND)
        self.assertEqual(self.notifier.kinds().count("completed"), 1)


class ResumeReconciliationTestCase(OrchestratorTestCase):
    async def test_resume_after_completion_notifies_once(self) -> None:
        problem = await self.orchestrator.solve_from_text("Solve for x: 2x + 3 = 7")

        first = await self.orchestrator.resume_from_background(problem.id)
        second = await self.orchestrator.resume_from_background(problem.id)

        self.assertEqual(first.outcome, ResumeOutcome.COMPLETED)
        self.assertEqual(second.outcome, ResumeOutcome.COMPLETED)
        self.assertEqual(first.phase, LifecyclePhase.FOREGROUND)
        self.assertEqual(self.notifier.kinds().count("completed"), 1)

    async def test_resume_with_queued_job_keeps_waiting(self) -> None:
        submitted = await self.orchestrator.submit_text_in_background("Solve for x: 2x + 3 = 7")
        result = await self.orchestrator.resume_from_background(submitted["problem_id"])
        self.assertEqual(result.outcome, ResumeOutcome.CONTINUING)
        self.assertEqual(result.status, STATUS_SOLVING)

    async def test_resume_for_unknown_problem_is_indeterminate(self) -> None:
        result = await self.orchestrator.resume_from_background("missing")
        self.assertEqual(result.outcome, ResumeOutcome.INDETERMINATE)
        self.assertEqual(result.phase, LifecyclePhase.FOREGROUND)
        self.assertIsNone(result.status)

    async def test_resume_for_failed_problem_is_indeterminate(self) -> None:
        submitted = await self.orchestrator.submit_text_in_background("Solve for x: 2x + 3 = 7")
        await self.orchestrator.cancel_background_solving()
        result = await self.orchestrator.resume_from_background(submitted["problem_id"])
        self.assertEqual(result.outcome, ResumeOutcome.INDETERMINATE)
        self.assertEqual(result.status, STATUS_ERROR)


class BackgroundJobTestCase(OrchestratorTestCase):
    async def test_text_job_solves_the_stored_record(self) -> None:
        submitted = await self.orchestrator.submit_text_in_background("Solve for x: 2x + 3 = 7")
        problem_id = submitted["problem_id"]
        self.assertEqual(submitted["job"]["status"], "queued")
        self.assertEqual((await self.orchestrator.get_problem(problem_id)).status, STATUS_SOLVING)
        self.assertEqual(self.notifier.events[-1], ("progress", "Solve for x: 2x + 3 = 7", BACKGROUND_STATUS, problem_id))

        problem = await self.orchestrator.run_scheduled(self.background.jobs[problem_id])

        self.assertEqual(problem.id, problem_id)
        self.assertEqual(problem.status, STATUS_SOLVED)
        self.assertEqual(len(await self.orchestrator.list_recent()), 1)
        self.assertEqual(self.notifier.events[-1], ("completed", COMPLETED_TITLE, "x = 2", problem_id))

    async def test_image_job_reads_and_removes_the_stored_image(self) -> None:
        submitted = await self.orchestrator.submit_image_in_background(PNG_BYTES)
        problem_id = submitted["problem_id"]
        payload = self.background.jobs[problem_id]
        self.assertTrue(os.path.isfile(payload["image_path"]))
        self.assertEqual((await self.orchestrator.get_problem(problem_id)).original_input, IMAGE_ORIGINAL_INPUT)

        problem = await self.orchestrator.run_scheduled(payload)

        self.assertEqual(problem.status, STATUS_SOLVED)
        self.assertEqual(self.engine.prompts[0], (EXTRACTION_PROMPT, PNG_BYTES))
        self.assertFalse(os.path.exists(payload["image_path"]))
        self.assertIn("completed", self.notifier.kinds())

    async def test_image_with_question_job(self) -> None:
        submitted = await self.orchestrator.submit_image_with_text_in_background(PNG_BYTES, "Find the area")
        payload = self.background.jobs[submitted["problem_id"]]
        self.assertEqual(payload["user_question"], "Find the area")

        problem = await self.orchestrator.run_scheduled(payload)
        self.assertEqual(problem.title, "Find the area")
        self.assertNotIn(EXTRACTION_PROMPT, [text for text, _ in self.engine.prompts])

    async def test_missing_image_fails_the_job(self) -> None:
        submitted = await self.orchestrator.submit_image_in_background(PNG_BYTES)
        payload = self.background.jobs[submitted["problem_id"]]
        os.remove(payload["image_path"])

        with self.assertRaises(SolvingFailed):
            await self.orchestrator.run_scheduled(payload)
        self.assertEqual((await self.orchestrator.get_problem(submitted["problem_id"])).status, STATUS_ERROR)
        self.assertIn("failed", self.notifier.kinds())

    async def test_same_problem_is_never_solved_twice_concurrently(self) -> None:
        self.engine.solve_gate = asyncio.Event()
        submitted = await self.orchestrator.submit_text_in_background("Solve for x: 2x + 3 = 7")
        payload = self.background.jobs[submitted["problem_id"]]

        first = asyncio.create_task(self.orchestrator.run_scheduled(payload))
        for _ in range(500):
            await asyncio.sleep(0)
            if self.orchestrator.is_currently_solving(submitted["problem_id"]):
                break
        with self.assertRaises(SolvingFailed):
            await self.orchestrator.run_scheduled(payload)

        self.engine.solve_gate.set()
        problem = await first
        self.assertEqual(problem.status, STATUS_SOLVED)

    async def test_cancel_marks_queued_problems_failed(self) -> None:
        text_job = await self.orchestrator.submit_text_in_background("Solve for x: 2x + 3 = 7")
        image_job = await self.orchestrator.submit_image_in_background(PNG_BYTES)
        image_path = self.background.jobs[image_job["problem_id"]]["image_path"]

        cancelled = await self.orchestrator.cancel_background_solving()

        self.assertEqual(set(cancelled), {text_job["problem_id"], image_job["problem_id"]})
        for problem_id in cancelled:
            self.assertEqual((await self.orchestrator.get_problem(problem_id)).status, STATUS_ERROR)
        self.assertFalse(os.path.exists(image_path))
        self.assertEqual(self.notifier.events[-1], ("cancel_progress",))
        self.assertEqual(self.background.jobs, {})


class QueueFullTestCase(OrchestratorTestCase):
    async def test_rejected_submission_marks_error_and_drops_image(self) -> None:
        orchestrator = self.build_orchestrator(background=RecordingBackground(capacity=0))

        with self.assertRaises(QueueFullError):
            await orchestrator.submit_image_in_background(PNG_BYTES)

        stored = await orchestrator.list_recent()
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].status, STATUS_ERROR)
        self.assertEqual(os.listdir(self.images.base), [])
        self.assertNotIn("progress", self.notifier.kinds())


class UnconfiguredBackgroundTestCase(OrchestratorTestCase):
    async def test_submission_requires_a_runner(self) -> None:
        self.orchestrator.background = None
        with self.assertRaises(SolverError):
            await self.orchestrator.submit_text_in_background("Solve for x: 2x + 3 = 7")
        self.assertEqual(await self.orchestrator.cancel_background_solving(), [])


if __name__ == "__main__":
    unittest.main()
