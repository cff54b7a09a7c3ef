import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from calmirror.aggregator import collect_source_events, snapshot_destination
from calmirror.models import MirrorConfig, Window
from calmirror.rate_limiter import RateLimiter
from calmirror.reconciler import reconcile

from fake_calendar import FakeCalendarService, at


TAG = "#calmirror"
WINDOW = Window(start=at(1, 0), end=at(1, 0) + timedelta(days=31))


class ReconcilerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.service = FakeCalendarService(["cal-a", "cal-b", "dest"])
        self.mirror = MirrorConfig.from_dict(
            {
                "source_calendar_ids": ["cal-a", "cal-b"],
                "destination_calendar_id": "dest",
                "default_title": "Busy",
                "title_by_calendar": {"cal-a": "Work"},
                "ownership_tag": TAG,
            }
        )
        self.sleep = mock.Mock()

    def _run(self):
        sources = collect_source_events(self.service, self.mirror.source_calendar_ids, WINDOW)
        destination = snapshot_destination(self.service, "dest", WINDOW, TAG)
        return reconcile(
            source_events=sources.events,
            destination_events=destination,
            destination=self.service,
            destination_calendar_id="dest",
            mirror=self.mirror,
            limiter=RateLimiter(0.5, sleep=self.sleep),
        )

    def _tagged(self):
        return [e for e in self.service.events_by_calendar["dest"] if e.has_tag(TAG)]

    def test_create_then_delete_then_noop(self) -> None:
        source = self.service.add("cal-a", "Standup", at(5, 10), at(5, 11))

        report = self._run()
        self.assertEqual(report.counts.created, 1)
        tagged = self._tagged()
        self.assertEqual(len(tagged), 1)
        self.assertEqual(tagged[0].summary, "Work")
        self.assertEqual((tagged[0].start, tagged[0].end), (at(5, 10), at(5, 11)))

        self.service.remove("cal-a", source.uid)
        report = self._run()
        self.assertEqual(report.counts.deleted, 1)
        self.assertEqual(self._tagged(), [])

        self.service.calls.clear()
        report = self._run()
        self.assertEqual(report.counts.changes, 0)
        self.assertEqual(self.service.mutations(), [])

    def test_second_pass_is_idempotent(self) -> None:
        self.service.add("cal-a", "Standup", at(5, 10), at(5, 11))
        self.service.add("cal-b", "Dentist", at(6, 14), at(6, 15))
        self._run()
        self.service.calls.clear()
        self.sleep.reset_mock()

        report = self._run()

        self.assertEqual(report.counts.changes, 0)
        self.assertEqual(report.counts.unchanged, 2)
        self.assertEqual(self.service.mutations(), [])
        self.sleep.assert_not_called()

    def test_wrong_title_is_retitled_not_recreated(self) -> None:
        self.service.add("cal-a", "Standup", at(5, 10), at(5, 11))
        stale = self.service.add("dest", "Old title", at(5, 10), at(5, 11), description=TAG)

        report = self._run()

        self.assertEqual(report.counts.updated, 1)
        self.assertEqual(report.counts.created, 0)
        self.assertEqual(report.counts.deleted, 0)
        tagged = self._tagged()
        self.assertEqual([e.uid for e in tagged], [stale.uid])
        self.assertEqual(tagged[0].summary, "Work")

    def test_default_title_used_without_mapping(self) -> None:
        self.service.add("cal-b", "Dentist", at(6, 14), at(6, 15))
        self._run()
        self.assertEqual([e.summary for e in self._tagged()], ["Busy"])

    def test_identical_intervals_across_sources_create_two_entries(self) -> None:
        self.service.add("cal-a", "Review", at(7, 14), at(7, 15))
        self.service.add("cal-b", "Gym", at(7, 14), at(7, 15))

        report = self._run()

        self.assertEqual(report.counts.created, 2)
        tagged = self._tagged()
        self.assertEqual(len(tagged), 2)
        self.assertTrue(all((e.start, e.end) == (at(7, 14), at(7, 15)) for e in tagged))
        self.assertEqual(sorted(e.summary for e in tagged), ["Busy", "Work"])

        second = self._run()
        self.assertEqual(second.counts.changes, 0)

    def test_extra_tagged_duplicate_is_deleted(self) -> None:
        self.service.add("cal-a", "Standup", at(5, 10), at(5, 11))
        self.service.add("dest", "Work", at(5, 10), at(5, 11), description=TAG, uid="keep")
        self.service.add("dest", "Work", at(5, 10), at(5, 11), description=TAG, uid="extra")

        report = self._run()

        self.assertEqual(report.counts.deleted, 1)
        self.assertEqual([e.uid for e in self._tagged()], ["keep"])

    def test_manual_entries_are_never_touched(self) -> None:
        self.service.add("cal-a", "Standup", at(5, 10), at(5, 11))
        manual = self.service.add("dest", "Lunch with Sam", at(5, 10), at(5, 11), description="bring notes")
        other_manual = self.service.add("dest", "Personal", at(9, 8), at(9, 9))

        report = self._run()

        self.assertEqual(report.counts.created, 1)
        self.assertEqual(report.counts.deleted, 0)
        touched = {uid for op, uid in self.service.mutations() if op in {"set_title", "delete"}}
        self.assertNotIn(manual.uid, touched)
        self.assertNotIn(other_manual.uid, touched)
        dest_uids = {e.uid for e in self.service.events_by_calendar["dest"]}
        self.assertTrue({manual.uid, other_manual.uid} <= dest_uids)

    def test_all_day_source_events_are_not_mirrored(self) -> None:
        self.service.add("cal-a", "Holiday", at(8, 0), at(9, 0), all_day=True)
        report = self._run()
        self.assertEqual(report.counts.created, 0)
        self.assertEqual(self._tagged(), [])

    def test_match_is_on_instants_not_wall_clock(self) -> None:
        plus_two = timezone(timedelta(hours=2))
        self.service.add("cal-a", "Standup", at(5, 10), at(5, 11))
        self.service.add(
            "dest",
            "Work",
            datetime(2026, 3, 5, 12, 0, tzinfo=plus_two),
            datetime(2026, 3, 5, 13, 0, tzinfo=plus_two),
            description=TAG,
        )

        report = self._run()

        self.assertEqual(report.counts.changes, 0)
        self.assertEqual(report.counts.unchanged, 1)

    def test_failed_mutation_is_skipped_and_pass_continues(self) -> None:
        self.service.add("cal-a", "Standup", at(5, 10), at(5, 11))
        self.service.add("cal-b", "Dentist", at(6, 14), at(6, 15))
        self.service.add("dest", "Busy", at(20, 9), at(20, 10), description=TAG, uid="orphan")
        self.service.failing_ops.add("create")

        report = self._run()

        self.assertEqual(report.counts.failed, 2)
        self.assertEqual(report.counts.deleted, 1)
        self.assertEqual([a.action for a in report.actions], ["create_failed", "create_failed", "delete"])
        self.assertEqual(self._tagged(), [])

    def test_each_mutation_is_throttled(self) -> None:
        self.service.add("cal-a", "Standup", at(5, 10), at(5, 11))
        self.service.add("dest", "Stale", at(6, 10), at(6, 11), description=TAG)
        self.service.add("cal-b", "Dentist", at(6, 10), at(6, 11))
        self.service.add("dest", "Busy", at(20, 9), at(20, 10), description=TAG)

        report = self._run()

        self.assertEqual(report.counts.changes, 3)
        self.assertEqual(self.sleep.call_count, 3)
        self.sleep.assert_called_with(0.5)


if __name__ == "__main__":
    unittest.main()
