import json
import sqlite3
import tempfile
import unittest
from datetime import datetime
from unittest import mock

import db
import dosing
from config import _to_utc_storage
from errors import NotFound, ValidationFailure

DAY = "2026-03-10"
AT_0900 = datetime(2026, 3, 10, 9, 0)
AT_2005 = datetime(2026, 3, 10, 20, 5)


class DosingTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self._old_db_path = db.DB_PATH
        db.DB_PATH = f"{self.tmp.name}/test.db"
        db.init_db()
        self.uid = self._user("alice@example.com")

    def tearDown(self):
        db.DB_PATH = self._old_db_path
        self.tmp.cleanup()

    def _user(self, email):
        with db.get_db() as conn:
            cur = conn.execute(
                "INSERT INTO users (email, name, password_hash) VALUES (?, 'Test', 'x')", (email,)
            )
            conn.commit()
            return cur.lastrowid

    def _medication(self, uid, timings, stock=10, active=True, name="Metformin", now=None):
        """Create a medication the way the create endpoint does, seeding its slots for today."""
        with db.get_db() as conn:
            cur = conn.execute(
                "INSERT INTO medications (user_id, name, dosage, timings, total_stock, remaining_stock, active)"
                " VALUES (?, ?, '500mg', ?, ?, ?, ?)",
                (uid, name, json.dumps(timings), stock, stock, int(active)),
            )
            med_id = cur.lastrowid
            if now is not None:
                dosing.seed_doses(conn, uid, med_id, timings, now=now)
            conn.commit()
        return med_id

    def _remaining(self, med_id):
        with db.get_db() as conn:
            return conn.execute(
                "SELECT remaining_stock FROM medications WHERE id=?", (med_id,)
            ).fetchone()[0]

    def _event_count(self):
        with sqlite3.connect(db.DB_PATH) as conn:
            return conn.execute("SELECT COUNT(*) FROM dose_events").fetchone()[0]


class ValidationTests(unittest.TestCase):
    def test_timing_format(self):
        self.assertEqual(dosing.validate_timing(" 08:30 "), "08:30")
        for bad in ["8:30", "24:00", "12:60", "noon", ""]:
            with self.assertRaises(ValidationFailure):
                dosing.validate_timing(bad)

    def test_timing_list_rules(self):
        self.assertEqual(dosing.validate_timings(["20:00", "08:00"]), ["20:00", "08:00"])
        with self.assertRaises(ValidationFailure):
            dosing.validate_timings([])
        with self.assertRaises(ValidationFailure):
            dosing.validate_timings(["08:00", "08:00"])
        with self.assertRaises(ValidationFailure):
            dosing.validate_timings([f"0{h}:00" for h in range(7)])

    def test_initial_status_by_day(self):
        self.assertEqual(dosing.initial_status(DAY, "08:00", AT_0900), "missed")
        self.assertEqual(dosing.initial_status(DAY, "09:00", AT_0900), "upcoming")
        self.assertEqual(dosing.initial_status("2026-03-09", "23:00", AT_0900), "missed")
        self.assertEqual(dosing.initial_status("2026-03-11", "00:00", AT_0900), "upcoming")

    def test_stock_percentage(self):
        self.assertEqual(dosing.stock_percentage(2, 10), 20)
        self.assertEqual(dosing.stock_percentage(5, 0), 0)


class DailyScheduleTests(DosingTestCase):
    def test_created_at_nine_classifies_slots(self):
        med_id = self._medication(self.uid, ["08:00", "20:00"], now=AT_0900)
        schedule = dosing.get_daily_schedule(self.uid, DAY, now=AT_0900)
        self.assertEqual(
            [(d["scheduled_time"], d["status"]) for d in schedule],
            [("08:00", "missed"), ("20:00", "upcoming")],
        )
        self.assertTrue(all(d["medication_id"] == med_id for d in schedule))
        self.assertEqual(schedule[0]["medication"]["name"], "Metformin")
        self.assertEqual(schedule[0]["medication"]["timings"], ["08:00", "20:00"])

    def test_lazy_materialization_is_idempotent(self):
        self._medication(self.uid, ["20:00", "08:00", "13:30"])
        first = dosing.get_daily_schedule(self.uid, DAY, now=AT_0900)
        second = dosing.get_daily_schedule(self.uid, DAY, now=AT_0900)
        self.assertEqual([d["id"] for d in first], [d["id"] for d in second])
        self.assertEqual(self._event_count(), 3)
        self.assertEqual([d["scheduled_time"] for d in first], ["08:00", "13:30", "20:00"])

    def test_one_entry_per_timing_per_medication(self):
        a = self._medication(self.uid, ["07:00", "12:00", "19:00"], name="A")
        b = self._medication(self.uid, ["12:00"], name="B")
        schedule = dosing.get_daily_schedule(self.uid, DAY, now=AT_0900)
        times_a = [d["scheduled_time"] for d in schedule if d["medication_id"] == a]
        self.assertEqual(sorted(times_a), ["07:00", "12:00", "19:00"])
        self.assertEqual(len(schedule), 4)
        # Ties keep medication insertion order.
        noon = [d["medication_id"] for d in schedule if d["scheduled_time"] == "12:00"]
        self.assertEqual(noon, [a, b])

    def test_existing_events_are_reused_as_is(self):
        med_id = self._medication(self.uid, ["08:00"], now=AT_0900)
        dosing.take_dose(self.uid, med_id, "08:00", DAY, now=AT_0900)
        schedule = dosing.get_daily_schedule(self.uid, DAY, now=AT_0900)
        self.assertEqual(schedule[0]["status"], "taken")
        self.assertEqual(self._event_count(), 1)

    def test_inactive_and_foreign_medications_are_excluded(self):
        self._medication(self.uid, ["08:00"], active=False)
        other = self._user("bob@example.com")
        self._medication(other, ["10:00"])
        self.assertEqual(dosing.get_daily_schedule(self.uid, DAY, now=AT_0900), [])
        self.assertEqual(self._event_count(), 0)

    def test_past_and_future_days(self):
        self._medication(self.uid, ["23:00"])
        past = dosing.get_daily_schedule(self.uid, "2026-03-09", now=AT_0900)
        future = dosing.get_daily_schedule(self.uid, "2026-03-11", now=AT_0900)
        self.assertEqual(past[0]["status"], "missed")
        self.assertEqual(future[0]["status"], "upcoming")

    def test_slot_inserted_by_a_concurrent_request_is_reused(self):
        med_id = self._medication(self.uid, ["08:00"])
        real_medication_dict = dosing.medication_dict

        def racing_medication_dict(row):
            # Another request writes the slot after this one has read the ledger.
            with sqlite3.connect(db.DB_PATH) as other:
                other.execute(
                    "INSERT INTO dose_events"
                    " (user_id, medication_id, date, scheduled_time, status, taken_at)"
                    " VALUES (?, ?, ?, '08:00', 'taken', '2026-03-10 08:01:00')",
                    (self.uid, med_id, DAY),
                )
            return real_medication_dict(row)

        with mock.patch.object(dosing, "medication_dict", side_effect=racing_medication_dict):
            schedule = dosing.get_daily_schedule(self.uid, DAY, now=AT_0900)

        self.assertEqual(self._event_count(), 1)
        self.assertEqual(len(schedule), 1)
        self.assertEqual(schedule[0]["status"], "taken")
        self.assertEqual(schedule[0]["taken_at"], "2026-03-10 08:01:00")

    def test_malformed_day_is_rejected(self):
        with self.assertRaises(ValidationFailure):
            dosing.get_daily_schedule(self.uid, "10/03/2026", now=AT_0900)


class TimingChangeTests(DosingTestCase):
    def test_dropped_timings_lose_only_upcoming_slots(self):
        med_id = self._medication(self.uid, ["08:00", "20:00", "21:00"], now=AT_0900)
        with db.get_db() as conn:
            removed = dosing.prune_upcoming(conn, self.uid, med_id, ["08:00", "20:00"], day=DAY)
            conn.commit()
        self.assertEqual(removed, 1)
        schedule = dosing.get_daily_schedule(self.uid, DAY, now=AT_0900)
        # Materialization recreates 20:00 because the medication still lists it here.
        self.assertEqual(
            [(d["scheduled_time"], d["status"]) for d in schedule],
            [("08:00", "missed"), ("20:00", "upcoming"), ("21:00", "upcoming")],
        )

    def test_nothing_to_drop(self):
        med_id = self._medication(self.uid, ["08:00"], now=AT_0900)
        with db.get_db() as conn:
            self.assertEqual(dosing.prune_upcoming(conn, self.uid, med_id, [], day=DAY), 0)
        self.assertEqual(self._event_count(), 1)


class TakeDoseTests(DosingTestCase):
    def test_take_evening_dose(self):
        med_id = self._medication(self.uid, ["08:00", "20:00"], now=AT_0900)
        dose = dosing.take_dose(self.uid, med_id, "20:00", DAY, now=AT_2005)
        self.assertEqual(dose["status"], "taken")
        self.assertEqual(dose["taken_at"], _to_utc_storage(AT_2005))
        self.assertEqual(self._remaining(med_id), 9)

    def test_take_before_materialization_creates_taken_event(self):
        med_id = self._medication(self.uid, ["08:00"])
        self.assertEqual(self._event_count(), 0)
        dose = dosing.take_dose(self.uid, med_id, "08:00", DAY, now=AT_0900)
        self.assertEqual(dose["status"], "taken")
        self.assertIsNotNone(dose["taken_at"])
        self.assertEqual(self._event_count(), 1)

    def test_missed_dose_can_be_taken_retroactively(self):
        med_id = self._medication(self.uid, ["08:00"], now=AT_0900)
        dose = dosing.take_dose(self.uid, med_id, "08:00", DAY, now=AT_2005)
        self.assertEqual(dose["status"], "taken")

    def test_second_take_keeps_status_and_stock(self):
        med_id = self._medication(self.uid, ["20:00"], now=AT_0900)
        dosing.take_dose(self.uid, med_id, "20:00", DAY, now=AT_2005)
        dose = dosing.take_dose(self.uid, med_id, "20:00", DAY, now=AT_2005)
        self.assertEqual(dose["status"], "taken")
        self.assertEqual(self._remaining(med_id), 9)
        self.assertEqual(self._event_count(), 1)

    def test_stock_never_goes_negative(self):
        med_id = self._medication(self.uid, ["08:00", "20:00"], stock=1)
        dosing.take_dose(self.uid, med_id, "08:00", DAY, now=AT_2005)
        dosing.take_dose(self.uid, med_id, "20:00", DAY, now=AT_2005)
        self.assertEqual(self._remaining(med_id), 0)

    def test_other_users_medication_is_not_found(self):
        other = self._user("bob@example.com")
        med_id = self._medication(other, ["08:00"])
        with self.assertRaises(NotFound):
            dosing.take_dose(self.uid, med_id, "08:00", DAY, now=AT_0900)
        self.assertEqual(self._remaining(med_id), 10)

    def test_unscheduled_time_is_not_found(self):
        med_id = self._medication(self.uid, ["08:00"])
        with self.assertRaises(NotFound):
            dosing.take_dose(self.uid, med_id, "09:15", DAY, now=AT_0900)

    def test_recorded_slot_survives_timing_change(self):
        med_id = self._medication(self.uid, ["08:00"], now=AT_0900)
        with db.get_db() as conn:
            conn.execute("UPDATE medications SET timings=? WHERE id=?", (json.dumps(["09:30"]), med_id))
            conn.commit()
        dose = dosing.take_dose(self.uid, med_id, "08:00", DAY, now=AT_2005)
        self.assertEqual(dose["status"], "taken")

    def test_malformed_input_is_rejected_before_writing(self):
        med_id = self._medication(self.uid, ["08:00"])
        with self.assertRaises(ValidationFailure):
            dosing.take_dose(self.uid, med_id, "8am", DAY)
        with self.assertRaises(ValidationFailure):
            dosing.take_dose(self.uid, med_id, "08:00", "tomorrow")
        self.assertEqual(self._event_count(), 0)


class SkipDoseTests(DosingTestCase):
    def test_skip_upcoming_dose(self):
        med_id = self._medication(self.uid, ["20:00"], now=AT_0900)
        dose = dosing.skip_dose(self.uid, med_id, "20:00", DAY, now=AT_0900)
        self.assertEqual(dose["status"], "skipped")
        self.assertIsNone(dose["taken_at"])
        self.assertEqual(self._remaining(med_id), 10)

    def test_taken_dose_cannot_be_skipped(self):
        med_id = self._medication(self.uid, ["08:00"], now=AT_0900)
        dosing.take_dose(self.uid, med_id, "08:00", DAY, now=AT_0900)
        with self.assertRaises(ValidationFailure):
            dosing.skip_dose(self.uid, med_id, "08:00", DAY, now=AT_0900)


if __name__ == "__main__":
    unittest.main()
