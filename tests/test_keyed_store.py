import threading
import unittest
from dataclasses import dataclass, field
from datetime import datetime
from typing import List

from clinic.errors import ValidationError
from datastore import KeyedStore, Snapshot


@dataclass
class Record:
    id: str
    name: str
    tags: List[str] = field(default_factory=list)

    def search_terms(self) -> List[str]:
        return [self.id, self.name]


class KeyedStoreCrudTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store: KeyedStore[Record] = KeyedStore("Record")

    def test_put_returns_previous_value_and_last_put_wins(self) -> None:
        first = Record("k1", "first")
        second = Record("k1", "second")

        self.assertIsNone(self.store.put("k1", first))
        self.assertIs(self.store.put("k1", second), first)
        self.assertEqual(self.store.get("k1").name, "second")
        self.assertEqual(self.store.size(), 1)

    def test_put_rejects_blank_key_and_none_value(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.put("", Record("x", "x"))
        with self.assertRaises(ValidationError):
            self.store.put("   ", Record("x", "x"))
        with self.assertRaises(ValidationError):
            self.store.put("k1", None)
        self.assertTrue(self.store.is_empty())

    def test_get_never_raises(self) -> None:
        self.assertIsNone(self.store.get("missing"))
        self.assertIsNone(self.store.get(""))
        self.assertIsNone(self.store.get(None))

    def test_update_is_noop_for_unknown_key(self) -> None:
        self.assertFalse(self.store.update("k1", Record("k1", "a")))
        self.assertNotIn("k1", self.store)

        self.store.put("k1", Record("k1", "a"))
        self.assertTrue(self.store.update("k1", Record("k1", "b")))
        self.assertEqual(self.store.get("k1").name, "b")

    def test_remove_returns_removed_value(self) -> None:
        record = Record("k1", "a")
        self.store.put("k1", record)

        self.assertIs(self.store.remove("k1"), record)
        self.assertIsNone(self.store.remove("k1"))
        self.assertEqual(len(self.store), 0)

    def test_size_tracks_distinct_keys_minus_removed(self) -> None:
        for index in range(10):
            self.store.put(f"k{index % 6}", Record(f"k{index % 6}", str(index)))
        self.store.remove("k0")
        self.store.remove("k1")

        self.assertEqual(self.store.size(), 4)

    def test_put_all_applies_nothing_when_one_entry_is_invalid(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.put_all({"a": Record("a", "a"), "": Record("b", "b")})
        self.assertTrue(self.store.is_empty())

        self.store.put_all({"a": Record("a", "a"), "b": Record("b", "b")})
        self.assertEqual(sorted(self.store.keys()), ["a", "b"])

    def test_remove_all_returns_only_present_values(self) -> None:
        self.store.put_all({"a": Record("a", "a"), "b": Record("b", "b")})

        removed = self.store.remove_all(["a", "missing", ""])

        self.assertEqual([record.id for record in removed], ["a"])
        self.assertEqual(self.store.keys(), ["b"])

    def test_remove_all_rejects_a_bare_string(self) -> None:
        self.store.put_all({"a": Record("a", "a"), "b": Record("b", "b"), "ab": Record("ab", "ab")})

        with self.assertRaises(ValidationError):
            self.store.remove_all("ab")

        self.assertEqual(sorted(self.store.keys()), ["a", "ab", "b"])
        self.assertEqual(self.store.remove_all(None), [])


class KeyedStoreQueryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store: KeyedStore[Record] = KeyedStore("Record")
        for key, name in (("c", "Charlie"), ("a", "alpha"), ("b", "Bravo")):
            self.store.put(key, Record(key, name))

    def test_predicate_helpers(self) -> None:
        starts_with_b = lambda record: record.name.lower().startswith("b")

        self.assertEqual([record.id for record in self.store.find_where(starts_with_b)], ["b"])
        self.assertEqual(self.store.find_first(starts_with_b).id, "b")
        self.assertEqual(self.store.count(starts_with_b), 1)
        self.assertTrue(self.store.any_match(starts_with_b))
        self.assertFalse(self.store.all_match(starts_with_b))

    def test_none_predicate_semantics(self) -> None:
        self.assertEqual(len(self.store.find_where(None)), 3)
        self.assertIsNone(self.store.find_first(None))
        self.assertEqual(self.store.count(None), 3)
        self.assertTrue(self.store.any_match(None))
        self.assertTrue(self.store.all_match(None))

    def test_predicate_may_query_the_same_store(self) -> None:
        finished = threading.Event()

        def run() -> None:
            self.store.find_where(lambda record: self.store.contains(record.id))
            self.store.put("d", Record("d", "Delta"))
            finished.set()

        worker = threading.Thread(target=run)
        worker.start()
        worker.join(timeout=5)

        self.assertTrue(finished.is_set())

    def test_search_is_case_insensitive(self) -> None:
        self.assertEqual([record.id for record in self.store.search("BRAV")], ["b"])
        self.assertEqual(len(self.store.search("  ")), 3)
        self.assertEqual(self.store.search("zulu"), [])

    def test_list_sorted_requires_a_key(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.list_sorted()

        self.store.default_sort_key = lambda record: record.name.lower()
        self.assertEqual([record.id for record in self.store.list_sorted()], ["a", "b", "c"])
        self.assertEqual(
            [record.id for record in self.store.list_sorted(lambda record: record.id, reverse=True)],
            ["c", "b", "a"],
        )


class KeyedStorePagingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store: KeyedStore[Record] = KeyedStore("Record")
        for index in range(23):
            key = f"r{index:02d}"
            self.store.put(key, Record(key, f"name-{22 - index:02d}"))

    def test_pages_concatenate_to_sorted_listing(self) -> None:
        by_name = lambda record: record.name
        page_size = 5
        first = self.store.page(0, page_size, by_name)

        collected = list(first.content)
        for page_number in range(1, first.total_pages):
            collected.extend(self.store.page(page_number, page_size, by_name).content)

        self.assertEqual(first.total_pages, 5)
        self.assertEqual(first.total_elements, 23)
        self.assertEqual([record.id for record in collected], [record.id for record in self.store.list_sorted(by_name)])
        self.assertEqual(len({record.id for record in collected}), 23)

    def test_page_past_end_is_empty(self) -> None:
        page = self.store.page(5, 5)

        self.assertEqual(page.content, ())
        self.assertEqual(page.total_pages, 5)
        self.assertFalse(page.has_next)
        self.assertTrue(page.has_previous)

    def test_page_flags(self) -> None:
        first = self.store.page(0, 10)
        last = self.store.page(2, 10)

        self.assertTrue(first.is_first)
        self.assertTrue(first.has_next)
        self.assertTrue(last.is_last)
        self.assertEqual(len(last), 3)

    def test_invalid_page_arguments(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.page(-1, 10)
        with self.assertRaises(ValidationError):
            self.store.page(0, 0)

    def test_unsorted_pages_follow_insertion_order(self) -> None:
        page = self.store.page(0, 3)

        self.assertEqual([record.id for record in page.content], ["r00", "r01", "r02"])


class KeyedStoreSnapshotTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store: KeyedStore[Record] = KeyedStore("Record")
        self.store.put("key1", Record("key1", "one", ["x"]))
        self.store.put("key2", Record("key2", "two"))

    def test_snapshot_survives_removal_and_restore_brings_key_back(self) -> None:
        snap1 = self.store.snapshot()
        self.store.remove("key1")

        self.assertEqual(len(snap1), 2)
        self.assertIn("key1", snap1)

        self.store.restore(snap1)
        self.assertEqual(self.store.get("key1").name, "one")
        self.assertEqual(self.store.size(), 2)

    def test_snapshot_ignores_mutation_of_stored_objects(self) -> None:
        snapshot = self.store.snapshot()
        self.store.get("key1").tags.append("mutated")
        self.store.get("key2").name = "changed"

        self.assertEqual(snapshot.get("key1").tags, ["x"])
        self.assertEqual(snapshot.get("key2").name, "two")

    def test_snapshot_contents_cannot_be_changed_through_accessors(self) -> None:
        snapshot = self.store.snapshot()
        snapshot.get("key1").tags.append("leak")
        snapshot.to_dict()["key3"] = Record("key3", "three")

        self.assertEqual(snapshot.get("key1").tags, ["x"])
        self.assertNotIn("key3", snapshot)

    def test_restore_into_fresh_store_reproduces_contents(self) -> None:
        snapshot = self.store.snapshot()
        fresh: KeyedStore[Record] = KeyedStore("Record")

        fresh.restore(snapshot)

        self.assertEqual(sorted(fresh.keys()), ["key1", "key2"])
        self.assertEqual(fresh.get("key1"), Record("key1", "one", ["x"]))

    def test_mutating_store_after_restore_leaves_snapshot_alone(self) -> None:
        snapshot = self.store.snapshot()
        self.store.restore(snapshot)
        self.store.get("key1").tags.append("after-restore")

        self.assertEqual(snapshot.get("key1").tags, ["x"])

    def test_snapshot_built_directly(self) -> None:
        taken_at = datetime(2026, 1, 5, 8, 0)
        snapshot = Snapshot("Record", {"a": Record("a", "A")}, taken_at)

        self.assertEqual(snapshot.store_type, "Record")
        self.assertEqual(snapshot.taken_at, taken_at)
        self.assertEqual(snapshot.keys(), ["a"])


class KeyedStoreDiagnosticsTests(unittest.TestCase):
    def test_statistics_count_operations(self) -> None:
        store: KeyedStore[Record] = KeyedStore("Record")
        store.put("a", Record("a", "A"))
        store.update("a", Record("a", "B"))
        store.remove("a")

        stats = store.statistics()

        self.assertEqual(stats.store_type, "Record")
        self.assertEqual(stats.size, 0)
        self.assertEqual(stats.operation_count, 3)

    def test_validate_flags_mismatched_ids(self) -> None:
        store: KeyedStore[Record] = KeyedStore("Record")
        store.put("a", Record("a", "A"))
        store.put("b", Record("z", "Z"))

        result = store.validate()

        self.assertFalse(result.is_valid)
        self.assertEqual(result.entity_count, 2)
        self.assertEqual(len(result.errors), 1)


class KeyedStoreConcurrencyTests(unittest.TestCase):
    def test_concurrent_writers_and_readers(self) -> None:
        store: KeyedStore[Record] = KeyedStore("Record")
        errors: List[BaseException] = []

        def writer(offset: int) -> None:
            try:
                for index in range(200):
                    key = f"w{offset}-{index}"
                    store.put(key, Record(key, key))
            except BaseException as exc:  # pragma: no cover - surfaced by the assertion below
                errors.append(exc)

        def reader() -> None:
            try:
                for _ in range(200):
                    store.find_where(lambda record: record.name.startswith("w"))
                    store.page(0, 10)
            except BaseException as exc:  # pragma: no cover - surfaced by the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=writer, args=(offset,)) for offset in range(4)]
        threads += [threading.Thread(target=reader) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(errors, [])
        self.assertEqual(store.size(), 800)

    def test_batches_are_seen_whole(self) -> None:
        store: KeyedStore[Record] = KeyedStore("Record")
        batch = {f"b{index}": Record(f"b{index}", "batch") for index in range(50)}
        observed_sizes: List[int] = []
        done = threading.Event()

        def observe() -> None:
            while not done.is_set():
                observed_sizes.append(store.count(lambda record: record.name == "batch"))

        watcher = threading.Thread(target=observe)
        watcher.start()
        for _ in range(20):
            store.put_all(batch)
            store.remove_all(list(batch))
        done.set()
        watcher.join(timeout=10)

        self.assertTrue(all(size in (0, 50) for size in observed_sizes))


if __name__ == "__main__":
    unittest.main()
