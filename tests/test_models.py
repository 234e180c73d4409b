import unittest

from certificate_generator.errors import InputError
from certificate_generator.models import (
    FieldPlacement,
    Job,
    JobState,
    ProgressEvent,
    Stage,
    parse_field_placement,
    parse_fields,
    parse_row,
    parse_rows,
    percent_of,
)


class ParseFieldPlacementTests(unittest.TestCase):
    def test_parses_canonical_keys(self) -> None:
        placement = parse_field_placement(
            {"fieldName": "name", "x": 50, "y": 60.5, "fontSizePx": 24, "colorHex": "#1A2B3C", "bold": True},
            0,
        )

        self.assertEqual(placement, FieldPlacement("name", 50.0, 60.5, 24.0, "1a2b3c", True))
        self.assertEqual(placement.rgb, (26, 43, 60))

    def test_accepts_legacy_keys(self) -> None:
        placement = parse_field_placement({"field": "course", "x": 1, "y": 2, "size": 12, "color": "00ff00"}, 0)

        self.assertEqual(placement.field_name, "course")
        self.assertEqual(placement.font_size_px, 12.0)
        self.assertEqual(placement.color_hex, "00ff00")
        self.assertFalse(placement.bold)

    def test_color_defaults_to_black(self) -> None:
        placement = parse_field_placement({"fieldName": "name", "x": 0, "y": 0, "fontSizePx": 10}, 0)

        self.assertEqual(placement.color_hex, "000000")

    def test_rejects_invalid_placements(self) -> None:
        bad_inputs = [
            "name",
            {"x": 0, "y": 0, "fontSizePx": 10},
            {"fieldName": "name", "x": "left", "y": 0, "fontSizePx": 10},
            {"fieldName": "name", "x": 0, "y": 0, "fontSizePx": 0},
            {"fieldName": "name", "x": 0, "y": 0, "fontSizePx": 10, "colorHex": "red"},
            {"fieldName": "name", "x": 0, "y": 0, "fontSizePx": 10, "bold": "yes"},
        ]
        for raw in bad_inputs:
            with self.subTest(raw=raw):
                with self.assertRaises(InputError):
                    parse_field_placement(raw, 0)

    def test_fields_must_be_non_empty_array(self) -> None:
        with self.assertRaises(InputError):
            parse_fields([])
        with self.assertRaises(InputError):
            parse_fields({"fieldName": "name"})


class ParseRowTests(unittest.TestCase):
    def test_coerces_scalars_to_strings(self) -> None:
        row = parse_row({"name": "Alice", "score": 97, "passed": True, "note": None}, 0)

        self.assertEqual(row, {"name": "Alice", "score": "97", "passed": "True", "note": ""})

    def test_rejects_nested_values(self) -> None:
        with self.assertRaises(InputError):
            parse_row({"name": {"first": "Alice"}}, 0)

    def test_rows_must_be_non_empty_array(self) -> None:
        with self.assertRaises(InputError):
            parse_rows([])
        with self.assertRaises(InputError):
            parse_rows("Alice")
        with self.assertRaises(InputError):
            parse_rows([{"name": "Alice"}, "Bob"])


class JobTests(unittest.TestCase):
    def _job(self, count: int = 2) -> Job:
        rows = [{"name": f"Person {index}"} for index in range(count)]
        return Job(rows, [FieldPlacement("name", 0, 0, 12)])

    def test_new_job_is_queued(self) -> None:
        job = self._job()

        self.assertIs(job.state, JobState.QUEUED)
        self.assertEqual(job.total, 2)
        self.assertEqual(job.percent, 0)
        self.assertEqual(len(job.id), 32)

    def test_allows_legal_transitions(self) -> None:
        job = self._job()
        job.transition(JobState.RUNNING)
        job.transition(JobState.PARTIAL, "stopped")

        self.assertIs(job.state, JobState.PARTIAL)
        self.assertEqual(job.message, "stopped")
        self.assertIsNotNone(job.started_at)
        self.assertIsNotNone(job.finished_at)

    def test_queued_job_can_be_cancelled(self) -> None:
        job = self._job()
        job.transition(JobState.CANCELLED)

        self.assertTrue(job.state.terminal)

    def test_rejects_illegal_transitions(self) -> None:
        job = self._job()
        with self.assertRaises(ValueError):
            job.transition(JobState.COMPLETED)

        job.transition(JobState.RUNNING)
        job.transition(JobState.COMPLETED)
        with self.assertRaises(ValueError):
            job.transition(JobState.FAILED)

    def test_counts_cannot_exceed_total(self) -> None:
        job = self._job(2)
        job.record_success()
        job.record_failure(1, "boom")

        self.assertEqual(job.processed_count, 2)
        self.assertEqual(job.generated_count, 1)
        self.assertEqual(job.failed_count, 1)
        self.assertEqual(job.failures, [(1, "boom")])
        self.assertEqual(job.percent, 100)
        with self.assertRaises(ValueError):
            job.record_success()

    def test_to_dict_reports_downloadable_only_with_artifact(self) -> None:
        job = self._job()
        job.transition(JobState.RUNNING)
        job.transition(JobState.COMPLETED)
        self.assertFalse(job.to_dict()["downloadable"])

        job.artifact_path = "/tmp/archive.zip"
        summary = job.to_dict()
        self.assertTrue(summary["downloadable"])
        self.assertEqual(summary["state"], "completed")
        self.assertEqual(summary["jobId"], job.id)


class ProgressEventTests(unittest.TestCase):
    def test_to_dict_uses_wire_names(self) -> None:
        event = ProgressEvent("job-1", Stage.RENDERING, 3, 10, 30, "Generated 3 of 10", timestamp=1.0)

        self.assertEqual(
            event.to_dict(),
            {
                "jobId": "job-1",
                "stage": "rendering",
                "current": 3,
                "total": 10,
                "percent": 30,
                "message": "Generated 3 of 10",
                "timestamp": 1.0,
                "generated": 0,
                "failed": 0,
            },
        )

    def test_terminal_stages(self) -> None:
        self.assertTrue(Stage.COMPLETE.terminal)
        self.assertTrue(Stage.ERROR.terminal)
        self.assertFalse(Stage.FINALIZING.terminal)

    def test_percent_of(self) -> None:
        self.assertEqual(percent_of(1, 3), 33)
        self.assertEqual(percent_of(3, 3), 100)
        self.assertEqual(percent_of(0, 0), 100)


if __name__ == "__main__":
    unittest.main()
