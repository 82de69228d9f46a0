import os
import unittest

from covflow.analysis.analyzer import StaticAnalyzer
from covflow.errors import FileConflictError, ValidationError
from covflow.model import LineStatus
from covflow.runtime.store import DataStore, make_file_id, merge, merge_all


def _store(*records, path="/src/a.py", file_id="a"):
    """Store with one file and (line, count, covered) records."""
    store = DataStore.create()
    store.register_file(file_id, path)
    for line, count, covered in records:
        store.add_execution(file_id, line, count)
        if covered:
            store.add_coverage(file_id, line)
    return store


class TestFileMap(unittest.TestCase):
    def testRegisterAndLookup(self):
        store = DataStore.create()
        source = store.register_file("a", "/src/a.py", "x = 1\ny = 2\n")

        self.assertEqual(source.total_line_count, 2)
        self.assertEqual(store.path_for("a"), "/src/a.py")
        self.assertEqual(store.id_for("/src/a.py"), "a")
        self.assertIsNone(store.id_for("/src/b.py"))
        self.assertIsNone(store.path_for("b"))

    def testRegisterIsIdempotent(self):
        store = DataStore.create()
        first = store.register_file("a", "/src/a.py")
        second = store.register_file("a", "/src/a.py", "x = 1\n")

        self.assertIs(first, second)
        self.assertEqual(second.content, "x = 1\n")
        self.assertEqual(store.file_ids(), ["a"])

    def testIdBoundToTwoPaths(self):
        store = DataStore.create()
        store.register_file("a", "/src/a.py")
        with self.assertRaises(FileConflictError) as info:
            store.register_file("a", "/src/b.py")
        self.assertEqual(info.exception.file_id, "a")
        self.assertEqual(store.path_for("a"), "/src/a.py")

    def testPathBoundToTwoIds(self):
        store = DataStore.create()
        store.register_file("a", "/src/a.py")
        with self.assertRaises(FileConflictError):
            store.register_file("b", "/src/a.py")
        self.assertEqual(store.file_ids(), ["a"])

    def testMalformedRegistration(self):
        store = DataStore.create()
        for file_id, path in ((None, "/src/a.py"), ("", "/src/a.py"), ("a", None), ("a", "")):
            with self.assertRaises(ValidationError):
                store.register_file(file_id, path)
        self.assertEqual(store.file_ids(), [])

    def testReplaceContentStartsFileOver(self):
        store = _store((1, 2, True))
        store.files["a"].content = "x = 1\n"
        store.attach_analysis("a", StaticAnalyzer(use_cache=False).analyze("x = 1\n", path="/src/a.py"))
        counts = store.counts_for("a")

        store.replace_content("a", "x = 1\ny = 2\n")

        self.assertEqual(store.get_execution_count("a", 1), 0)
        self.assertFalse(store.is_covered("a", 1))
        self.assertIsNone(store.analysis_for("a"))
        self.assertIs(store.counts_for("a"), counts)
        self.assertEqual(store.files["a"].total_line_count, 2)
        self.assertEqual(store.id_for("/src/a.py"), "a")

        store.attach_analysis("a", StaticAnalyzer(use_cache=False).analyze("x = 1\ny = 2\n", path="/src/a.py"))
        self.assertEqual(store.analysis_for("a").executable_lines, {1, 2})

        with self.assertRaises(ValidationError):
            store.replace_content("missing", "")

    def testAnalysisOfOtherContentIsAConflict(self):
        store = _store()
        analyzer = StaticAnalyzer(use_cache=False)
        store.attach_analysis("a", analyzer.analyze("x = 1\n", path="/src/a.py"))
        with self.assertRaises(FileConflictError):
            store.attach_analysis("a", analyzer.analyze("x = 2\n", path="/src/a.py"))

    def testMakeFileId(self):
        file_id = make_file_id("pkg/mod.py")
        self.assertEqual(len(file_id), 16)
        int(file_id, 16)
        self.assertEqual(file_id, make_file_id(os.path.abspath("pkg/mod.py")))
        self.assertNotEqual(file_id, make_file_id("pkg/other.py"))
        with self.assertRaises(ValidationError):
            make_file_id(None)


class TestRecords(unittest.TestCase):
    def testExecutionCounts(self):
        store = _store((1, 2, False), (3, 1, False))
        store.add_execution("a", 1)

        self.assertEqual(store.get_execution_count("a", 1), 3)
        self.assertEqual(store.get_execution_count("a", 2), 0)
        self.assertEqual(store.get_execution_count("missing", 1), 0)
        self.assertEqual(store.executed_lines("a"), {1, 3})

    def testInvalidArgumentsLeaveStoreUnchanged(self):
        store = _store((1, 1, False))
        before = store.snapshot_counts()
        for file_id, line in (("", 1), (None, 1), ("a", 0), ("a", -2), ("a", "3"), ("a", True), ("a", 1.0)):
            with self.assertRaises(ValidationError):
                store.add_execution(file_id, line)
            with self.assertRaises(ValidationError):
                store.add_coverage(file_id, line)
        with self.assertRaises(ValidationError):
            store.add_execution("a", 1, -1)
        self.assertEqual(store.snapshot_counts(), before)
        self.assertEqual(store.covered_lines("a"), set())

    def testCoverageImpliesExecution(self):
        store = _store()
        store.add_coverage("a", 4)

        self.assertTrue(store.is_covered("a", 4))
        self.assertEqual(store.get_execution_count("a", 4), 1)
        self.assertEqual(store.get_line_status("a", 4), LineStatus.COVERED)
        self.assertEqual(store.get_line_status("a", 5), LineStatus.NOT_COVERED)

        store.add_execution("a", 5)
        self.assertEqual(store.get_line_status("a", 5), LineStatus.EXECUTED)

    def testClearKeepsFileMap(self):
        store = _store((1, 2, True))
        counts = store.counts_for("a")
        store.clear()

        self.assertEqual(store.get_execution_count("a", 1), 0)
        self.assertFalse(store.is_covered("a", 1))
        self.assertEqual(store.path_for("a"), "/src/a.py")
        self.assertIs(store.counts_for("a"), counts)

        store.reset()
        self.assertEqual(store.file_ids(), [])

    def testStripLine(self):
        store = _store((2, 1, True))
        self.assertTrue(store.strip_line("a", 2))
        self.assertFalse(store.strip_line("a", 2))
        self.assertEqual(store.get_line_status("a", 2), LineStatus.NOT_COVERED)


class TestMerge(unittest.TestCase):
    def setUp(self):
        self.a = _store((1, 2, False), (2, 1, True))
        self.b = _store((1, 3, False), (4, 1, False))
        self.c = _store((7, 1, True), path="/src/c.py", file_id="c")

    def testCountsSumAndCoverageUnions(self):
        merged = merge(self.a, self.b)

        self.assertEqual(merged.get_execution_count("a", 1), 5)
        self.assertEqual(merged.get_execution_count("a", 2), 1)
        self.assertEqual(merged.get_execution_count("a", 4), 1)
        self.assertEqual(merged.covered_lines("a"), {2})

    def testInputsAreNotModified(self):
        before_a = self.a.to_dict()
        before_b = self.b.to_dict()
        merge(self.a, self.b)
        self.assertEqual(self.a.to_dict(), before_a)
        self.assertEqual(self.b.to_dict(), before_b)

    def testCommutativeAndAssociative(self):
        self.assertEqual(merge(self.a, self.b), merge(self.b, self.a))
        self.assertEqual(merge(merge(self.a, self.b), self.c), merge(self.a, merge(self.b, self.c)))
        self.assertEqual(merge_all([self.c, self.a, self.b]), merge(self.a, merge(self.b, self.c)))

    def testEmptyStoreIsNeutral(self):
        self.assertEqual(merge(self.a, DataStore.create()), self.a)

    def testConflictingFileMaps(self):
        other = _store((1, 1, False), path="/src/elsewhere.py")
        with self.assertRaises(FileConflictError):
            merge(self.a, other)

        target = self.a.copy()
        with self.assertRaises(FileConflictError):
            target.update(other)
        self.assertEqual(target, self.a)

    def testDifferentContentsDoNotMerge(self):
        analyzer = StaticAnalyzer(use_cache=False)
        self.a.attach_analysis("a", analyzer.analyze("x = 1\n", path="/src/a.py"))
        self.b.attach_analysis("a", analyzer.analyze("x = 2\n", path="/src/a.py"))
        with self.assertRaises(FileConflictError):
            merge(self.a, self.b)


class TestSerialization(unittest.TestCase):
    def testDictRoundTrip(self):
        store = _store((1, 2, False), (2, 1, True))
        restored = DataStore.from_dict(store.to_dict())
        self.assertEqual(restored, store)
        self.assertEqual(restored.get_execution_count("a", 1), 2)

    def testSaveAndLoad(self):
        import tempfile
        store = _store((3, 4, True))
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "coverage.json")
            store.save(path)
            self.assertEqual(DataStore.load(path), store)

    def testRejectsOtherFormats(self):
        with self.assertRaises(ValidationError):
            DataStore.from_dict({"version": 99})
        with self.assertRaises(ValidationError):
            DataStore.from_dict([])
        with self.assertRaises(ValidationError):
            DataStore.from_dict({"version": 1, "execution": {"a": {"x": 1}}})
        with self.assertRaises(ValidationError):
            DataStore.from_dict({"version": 1, "execution": {"a": {"0": 1}}})


if __name__ == "__main__":
    unittest.main()
