import unittest
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from graphagent import (
    generate_id, deep_copy, deep_merge, chunk, execute_parallel, set_in_context, get_from_context,
)


class TestContextUtilities(unittest.TestCase):
    def test_generate_id(self):
        self.assertRegex(generate_id(), r"^node_[0-9a-f]{12}$")
        self.assertRegex(generate_id("step"), r"^step_[0-9a-f]{12}$")
        self.assertEqual(len({generate_id() for _ in range(100)}), 100)

    def test_deep_copy(self):
        original = {"a": {"b": [1, 2]}}
        copied = deep_copy(original)
        copied["a"]["b"].append(3)
        self.assertEqual(original, {"a": {"b": [1, 2]}})

    def test_deep_merge(self):
        merged = deep_merge({"a": 1, "n": {"x": 1}}, {"b": 2, "n": {"y": 2}}, {"a": 3})
        self.assertEqual(merged, {"a": 3, "b": 2, "n": {"x": 1, "y": 2}})

    def test_deep_merge_copies_values(self):
        source = {"n": {"xs": [1]}}
        merged = deep_merge(source)
        merged["n"]["xs"].append(2)
        self.assertEqual(source, {"n": {"xs": [1]}})

    def test_chunk(self):
        self.assertEqual(chunk(list(range(8)), 3), [[0, 1, 2], [3, 4, 5], [6, 7]])
        self.assertEqual(chunk([], 3), [])
        self.assertEqual(chunk((1, 2), 5), [[1, 2]])
        with self.assertRaises(ValueError):
            chunk([1], 0)

    def test_set_in_context(self):
        ctx = {"a": 1}
        updated = set_in_context(ctx, "b", 2)
        self.assertEqual(updated, {"a": 1, "b": 2})
        self.assertEqual(ctx, {"a": 1})

    def test_get_from_context(self):
        self.assertEqual(get_from_context({"a": 1}, "a"), 1)
        self.assertIsNone(get_from_context({"a": 1}, "b"))
        self.assertEqual(get_from_context({"a": 1}, "b", "fallback"), "fallback")
        self.assertEqual(get_from_context(None, "a", 0), 0)


class TestExecuteParallel(unittest.TestCase):
    def test_keeps_order(self):
        async def slow_double(x):
            await asyncio.sleep(0.01 * (5 - x))
            return x * 2

        self.assertEqual(asyncio.run(execute_parallel([1, 2, 3, 4], slow_double, 2)), [2, 4, 6, 8])
        self.assertEqual(asyncio.run(execute_parallel([1, 2, 3, 4], slow_double)), [2, 4, 6, 8])

    def test_empty(self):
        async def identity(x):
            return x

        self.assertEqual(asyncio.run(execute_parallel([], identity, 3)), [])

    def test_error_propagates(self):
        async def fail(x):
            raise ValueError(x)

        with self.assertRaises(ValueError):
            asyncio.run(execute_parallel([1], fail))


if __name__ == "__main__":
    unittest.main()
