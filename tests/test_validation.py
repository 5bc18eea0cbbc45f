import logging
import random
import unittest
from datetime import datetime, timezone

from levelserver.app import (
    AccessLogFormatter,
    recent_entry,
    sanitize_ip,
    sanitize_log_value,
    select_recent_ids,
    validate_level_data,
)
from levelserver.storage import canonical_json


VALID_LEVEL = {"name": "Test", "author": "Me", "difficulty": "3", "data": "xyz"}


class ValidateLevelDataTests(unittest.TestCase):
    def test_accepts_complete_document(self):
        self.assertTrue(validate_level_data(VALID_LEVEL, 1024))
        self.assertTrue(validate_level_data(dict(VALID_LEVEL, extra={"nested": [1, None]}), 1024))

    def test_rejects_non_objects(self):
        for candidate in (None, [], ["name"], "level", 3, {}):
            with self.subTest(candidate=candidate):
                self.assertFalse(validate_level_data(candidate, 1024))

    def test_rejects_missing_blank_or_non_string_fields(self):
        for field in ("name", "author", "difficulty", "data"):
            missing = {key: value for key, value in VALID_LEVEL.items() if key != field}
            for candidate in (
                missing,
                dict(VALID_LEVEL, **{field: ""}),
                dict(VALID_LEVEL, **{field: " \t\n"}),
                dict(VALID_LEVEL, **{field: None}),
                dict(VALID_LEVEL, **{field: 7}),
                dict(VALID_LEVEL, **{field: False}),
                dict(VALID_LEVEL, **{field: ["a"]}),
            ):
                with self.subTest(field=field, candidate=candidate):
                    self.assertFalse(validate_level_data(candidate, 1024))

    def test_size_limit_is_inclusive(self):
        size = len(canonical_json(VALID_LEVEL).encode("utf-8"))
        self.assertTrue(validate_level_data(VALID_LEVEL, size))
        self.assertFalse(validate_level_data(VALID_LEVEL, size - 1))

    def test_size_counts_utf8_bytes(self):
        ascii_level = dict(VALID_LEVEL, data="ab")
        wide_level = dict(VALID_LEVEL, data="éé")
        limit = len(canonical_json(ascii_level).encode("utf-8"))
        self.assertTrue(validate_level_data(ascii_level, limit))
        self.assertFalse(validate_level_data(wide_level, limit))

    def test_accepts_unpaired_surrogates(self):
        level = dict(VALID_LEVEL, name="A\ud800")
        size = len(canonical_json(level).encode("utf-8"))
        self.assertTrue(validate_level_data(level, size))
        self.assertFalse(validate_level_data(level, size - 1))

    def test_rejects_unserialisable_extra_values(self):
        self.assertFalse(validate_level_data(dict(VALID_LEVEL, score=float("inf")), 1024))


class SelectRecentIdsTests(unittest.TestCase):
    def test_last_takes_highest_ids(self):
        self.assertEqual(select_recent_ids([3, 9, 1, 7], 2, "LAST"), [9, 7])
        self.assertEqual(select_recent_ids([3, 9, 1], 10, "LAST"), [9, 3, 1])
        self.assertEqual(select_recent_ids([3, 9, 1], 0, "LAST"), [])
        self.assertEqual(select_recent_ids([], 5, "LAST"), [])

    def test_random_samples_without_replacement(self):
        ids = list(range(1, 21))
        rng = random.Random(1234)
        for _ in range(50):
            selected = select_recent_ids(ids, 5, "RANDOM", rng=rng)
            self.assertEqual(len(selected), 5)
            self.assertEqual(len(set(selected)), 5)
            self.assertTrue(set(selected) <= set(ids))

    def test_random_exhausts_small_pool(self):
        selected = select_recent_ids([4, 2, 8], 10, "RANDOM", rng=random.Random(0))
        self.assertEqual(sorted(selected), [2, 4, 8])

    def test_random_reaches_every_id(self):
        rng = random.Random(99)
        seen = set()
        for _ in range(200):
            seen.update(select_recent_ids(range(1, 11), 2, "RANDOM", rng=rng))
        self.assertEqual(seen, set(range(1, 11)))


class RecentEntryTests(unittest.TestCase):
    def test_defaults_for_missing_or_empty_fields(self):
        self.assertEqual(recent_entry(4, {}), ["4", "Untitled Level", "Unknown", "0"])
        self.assertEqual(
            recent_entry(5, {"name": "", "author": None, "difficulty": 0}),
            ["5", "Untitled Level", "Unknown", "0"],
        )

    def test_non_string_values_are_rendered_as_json(self):
        self.assertEqual(
            recent_entry(6, {"name": "Six", "author": "A", "difficulty": 4}),
            ["6", "Six", "A", "4"],
        )

    def test_nan_values_are_rendered(self):
        self.assertEqual(
            recent_entry(7, {"name": float("nan"), "author": "A", "difficulty": float("inf")}),
            ["7", "NaN", "A", "Infinity"],
        )

    def test_unpaired_surrogates_are_replaced(self):
        self.assertEqual(
            recent_entry(8, {"name": "A\ud800", "author": "B", "difficulty": "1"}),
            ["8", "A\ufffd", "B", "1"],
        )


class LoggingHelpersTests(unittest.TestCase):
    def test_sanitize_ip(self):
        self.assertEqual(sanitize_ip("127.0.0.1"), "127.0.0.1")
        self.assertEqual(sanitize_ip("1.2.3.4\r\nfake entry\t"), "1.2.3.4fake entry")
        self.assertEqual(sanitize_ip(None), "unknown")
        self.assertEqual(sanitize_ip(""), "unknown")

    def test_sanitize_log_value_escapes_control_characters(self):
        self.assertEqual(sanitize_log_value("a\nb\x01"), "a\\nb\\x01")
        self.assertEqual(sanitize_log_value(5), 5)

    def test_access_log_format(self):
        record = logging.LogRecord(
            "threedash.access", logging.INFO, __file__, 1, "%s %s.", ("1.2.3.4", "uploaded level 3"), None
        )
        record.created = datetime(2024, 5, 1, 12, 0, 0, 123500, tzinfo=timezone.utc).timestamp()

        self.assertEqual(
            AccessLogFormatter().format(record),
            "[2024-05-01 12:00:00.123] - 1.2.3.4 uploaded level 3.",
        )


if __name__ == "__main__":
    unittest.main()
