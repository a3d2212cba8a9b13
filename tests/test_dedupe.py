import os
import random
import sys
import unittest


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))


from pte.dedupe import DedupeStrategy, filter_batch, filter_identity, filter_timebased  # noqa: E402
from pte.errors import ConfigurationError, FetchError  # noqa: E402
from pte.models import IdentityMarker, RawItem, TimeMarker  # noqa: E402


def _ts_item(item_id: int, ts: int) -> RawItem:
    return RawItem(data={"id": item_id}, epoch_ms=ts, item_id=str(item_id))


def _id_item(item_id: str) -> RawItem:
    return RawItem(data={"id": item_id}, item_id=item_id)


class TestTimebased(unittest.TestCase):
    def test_two_poll_scenario(self) -> None:
        items, marker = filter_timebased(None, [_ts_item(1, 100), _ts_item(2, 200)])
        self.assertEqual([it.data["id"] for it in items], [1, 2])
        self.assertEqual(marker, TimeMarker(epoch_ms=200))

        items, marker = filter_timebased(marker, [_ts_item(2, 200), _ts_item(3, 300)])
        self.assertEqual([it.data["id"] for it in items], [3])
        self.assertEqual(marker, TimeMarker(epoch_ms=300))

    def test_equal_timestamp_is_treated_as_seen(self) -> None:
        items, marker = filter_timebased(TimeMarker(epoch_ms=200), [_ts_item(9, 200)])
        self.assertEqual(items, [])
        self.assertEqual(marker, TimeMarker(epoch_ms=200))

    def test_empty_batch_keeps_marker(self) -> None:
        previous = TimeMarker(epoch_ms=500)
        items, marker = filter_timebased(previous, [])
        self.assertEqual(items, [])
        self.assertIs(marker, previous)

    def test_first_run_empty_batch_has_no_marker(self) -> None:
        items, marker = filter_timebased(None, [])
        self.assertEqual(items, [])
        self.assertIsNone(marker)

    def test_marker_never_moves_backward(self) -> None:
        items, marker = filter_timebased(TimeMarker(epoch_ms=1000), [_ts_item(1, 10), _ts_item(2, 20)])
        self.assertEqual(items, [])
        self.assertEqual(marker, TimeMarker(epoch_ms=1000))

    def test_output_sorted_by_timestamp_stable_for_ties(self) -> None:
        batch = [_ts_item(3, 300), _ts_item(1, 100), _ts_item(2, 300)]
        items, _ = filter_timebased(None, batch)
        self.assertEqual([it.data["id"] for it in items], [1, 3, 2])

    def test_missing_timestamp_is_fetch_error(self) -> None:
        with self.assertRaises(FetchError):
            filter_timebased(None, [RawItem(data={"id": 1}, item_id="1")])

    def test_properties_over_random_batches(self) -> None:
        rng = random.Random(20260210)
        for _ in range(300):
            previous = None if rng.random() < 0.2 else TimeMarker(epoch_ms=rng.randint(0, 1000))
            batch = [_ts_item(i, rng.randint(0, 1000)) for i in range(rng.randint(0, 12))]
            items, marker = filter_timebased(previous, batch)

            last = previous.epoch_ms if previous else None
            for it in items:
                if last is not None:
                    self.assertGreater(it.epoch_ms, last)
            if last is not None:
                self.assertEqual(len(items), sum(1 for it in batch if it.epoch_ms > last))
            else:
                self.assertEqual(len(items), len(batch))

            if batch:
                expected = max([it.epoch_ms for it in batch] + ([last] if last is not None else []))
                self.assertEqual(marker.epoch_ms, expected)

            # 重放同一批次：marker 已越过它，不应再有新条目
            replay, replay_marker = filter_timebased(marker, batch)
            self.assertEqual(replay, [])
            self.assertEqual(replay_marker, marker)


class TestIdentity(unittest.TestCase):
    def test_capacity_two_scenario(self) -> None:
        items, marker = filter_identity(None, [_id_item("a"), _id_item("b"), _id_item("c")], capacity=2)
        self.assertEqual([it.item_id for it in items], ["a", "b", "c"])
        self.assertEqual(marker.ids, ("b", "c"))

        items, marker = filter_identity(marker, [_id_item("a"), _id_item("b")], capacity=2)
        self.assertEqual([it.item_id for it in items], ["a"])
        self.assertEqual(marker.ids, ("c", "a"))

    def test_duplicates_within_batch_emitted_once(self) -> None:
        items, marker = filter_identity(None, [_id_item("x"), _id_item("x"), _id_item("y")])
        self.assertEqual([it.item_id for it in items], ["x", "y"])
        self.assertEqual(marker.ids, ("x", "y"))

    def test_set_never_exceeds_capacity_and_evicts_oldest(self) -> None:
        marker = IdentityMarker()
        for i in range(50):
            _, marker = filter_identity(marker, [_id_item(f"id-{i}")], capacity=7)
            self.assertLessEqual(len(marker.ids), 7)
        self.assertEqual(marker.ids, tuple(f"id-{i}" for i in range(43, 50)))

    def test_replay_is_idempotent(self) -> None:
        batch = [_id_item("a"), _id_item("b")]
        _, marker = filter_identity(None, batch)
        items, again = filter_identity(marker, batch)
        self.assertEqual(items, [])
        self.assertEqual(again, marker)

    def test_missing_identifier_is_fetch_error(self) -> None:
        with self.assertRaises(FetchError):
            filter_identity(None, [RawItem(data={}, epoch_ms=1)])

    def test_invalid_capacity(self) -> None:
        with self.assertRaises(ConfigurationError):
            filter_identity(None, [], capacity=0)


class TestDispatch(unittest.TestCase):
    def test_strategy_parse(self) -> None:
        self.assertIs(DedupeStrategy.parse(" TimeBased "), DedupeStrategy.TIMEBASED)
        self.assertIs(DedupeStrategy.parse("identity"), DedupeStrategy.IDENTITY)
        with self.assertRaises(ConfigurationError):
            DedupeStrategy.parse("last_item")

    def test_marker_kind_mismatch(self) -> None:
        with self.assertRaises(ConfigurationError):
            filter_batch(DedupeStrategy.TIMEBASED, IdentityMarker(ids=("a",)), [])
        with self.assertRaises(ConfigurationError):
            filter_batch(DedupeStrategy.IDENTITY, TimeMarker(epoch_ms=1), [])

    def test_dispatch_passes_capacity(self) -> None:
        items, marker = filter_batch(
            DedupeStrategy.IDENTITY,
            None,
            [_id_item("a"), _id_item("b")],
            capacity=1,
        )
        self.assertEqual(len(items), 2)
        self.assertEqual(marker, IdentityMarker(ids=("b",)))
