import unittest
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from graphagent import (
    create_node, create_async_node, batch, batch_async, BatchProcessor, AsyncBatchError,
    is_batch_failure, batch_failure, result_key, RecordingSink, LogLevel, use_sink,
    ExecutionTracer, use_tracer,
)


def select_items(ctx):
    return ctx["items"]


def square_unless_flagged(item):
    if item.get("fail"):
        raise ValueError(f"bad item {item['id']}")
    return item["value"] ** 2


def store_square(ctx, p, e):
    ctx["square"] = e
    return "default"


def five_items():
    # indices 2 and 4 fail
    return [{"id": i + 1, "value": i, "fail": i in (2, 4)} for i in range(5)]


class TestBatchProcessor(unittest.TestCase):
    def setUp(self):
        self.node = create_node().with_execute_logic(square_unless_flagged).with_finalize(store_square)

    def test_partial_failure_is_data(self):
        processor = batch(self.node).with_items_selector(select_items)
        result = processor.execute({"items": five_items()})
        results = result["results"]

        self.assertEqual(len(results), 5)
        self.assertEqual([is_batch_failure(r) for r in results], [False, False, True, False, True])
        self.assertEqual(results[2], {"processed": False, "error": "bad item 3"})
        self.assertEqual([r["square"] for r in results if not is_batch_failure(r)], [0, 1, 9])

    def test_item_errors_are_logged(self):
        sink = RecordingSink()
        with use_sink(sink):
            batch(self.node).with_items_selector(select_items).execute({"items": five_items()})
        errors = sink.messages(LogLevel.ERROR)
        self.assertEqual(sum(m.startswith("Error processing batch item") for m in errors), 2)

    def test_item_errors_are_traced(self):
        tracer = ExecutionTracer()
        with use_tracer(tracer):
            batch(self.node).with_items_selector(select_items).execute({"items": five_items()})
        events = [e for e in tracer.events if e.event_type.value == "batch_item_error"]
        self.assertEqual([e.data["item_key"] for e in events], ["3", "5"])

    def test_default_collector_keeps_context(self):
        result = batch(self.node).with_items_selector(select_items).execute({"items": [], "keep": 1})
        self.assertEqual(result, {"items": [], "keep": 1, "results": []})

    def test_default_selector_selects_nothing(self):
        self.assertEqual(batch(self.node).execute({"x": 1}), {"x": 1, "results": []})

    def test_custom_collector(self):
        processor = (batch(self.node)
                     .with_items_selector(select_items)
                     .with_results_collector(lambda ctx, rs: {"ok": sum(not is_batch_failure(r) for r in rs)}))
        self.assertEqual(processor.execute({"items": five_items()}), {"ok": 3})

    def test_duplicate_keys_collapse(self):
        items = [{"id": "a", "value": 1}, {"id": "a", "value": 2}, {"id": "b", "value": 3}]
        result = batch(self.node).with_items_selector(select_items).execute({"items": items})
        self.assertEqual([r["square"] for r in result["results"]], [4, 9])

    def test_input_items_not_mutated(self):
        items = [{"id": 1, "value": 2}]
        batch(self.node).with_items_selector(select_items).execute({"items": items})
        self.assertEqual(items, [{"id": 1, "value": 2}])

    def test_unbounded_concurrency(self):
        processor = batch(self.node).with_items_selector(select_items).with_concurrency(None)
        self.assertEqual(len(processor.execute({"items": five_items()})["results"]), 5)

    def test_invalid_concurrency(self):
        with self.assertRaises(ValueError):
            batch(self.node).with_concurrency(0)
        with self.assertRaises(ValueError):
            BatchProcessor(self.node, concurrency=-1)

    def test_default_concurrency(self):
        self.assertEqual(batch(self.node).concurrency, 5)

    def test_selector_errors_propagate(self):
        def broken(ctx):
            raise KeyError("items")

        with self.assertRaises(KeyError):
            batch(self.node).with_items_selector(broken).execute({})

    def test_sync_batch_rejects_async_node(self):
        with self.assertRaises(TypeError):
            batch(create_async_node())


class TestAsyncBatchProcessor(unittest.TestCase):
    def test_partial_failure(self):
        async def run(item):
            await asyncio.sleep(0)
            return square_unless_flagged(item)

        node = create_async_node().with_execute_logic(run).with_finalize(store_square)
        result = asyncio.run(batch_async(node).with_items_selector(select_items).execute({"items": five_items()}))
        results = result["results"]
        self.assertEqual(len(results), 5)
        self.assertTrue(is_batch_failure(results[2]))
        self.assertTrue(is_batch_failure(results[4]))
        self.assertEqual(results[3]["square"], 9)

    def test_concurrency_bound(self):
        state = {"active": 0, "max": 0, "done": 0}
        starts = []

        async def run(item):
            starts.append((item["id"], state["done"]))
            state["active"] += 1
            state["max"] = max(state["max"], state["active"])
            await asyncio.sleep(0.01 * (item["id"] % 3 + 1))
            state["active"] -= 1
            state["done"] += 1
            return item["id"]

        node = create_async_node().with_execute_logic(run)
        items = [{"id": i + 1} for i in range(8)]
        processor = batch_async(node).with_items_selector(select_items).with_concurrency(3)
        result = asyncio.run(processor.execute({"items": items}))

        self.assertEqual(len(result["results"]), 8)
        self.assertEqual(state["max"], 3)
        # Each chunk starts only once the previous one has fully settled
        done_at_start = dict(starts)
        self.assertEqual([done_at_start[i] for i in (1, 2, 3)], [0, 0, 0])
        self.assertEqual([done_at_start[i] for i in (4, 5, 6)], [3, 3, 3])
        self.assertEqual([done_at_start[i] for i in (7, 8)], [6, 6])

    def test_async_selector_and_collector(self):
        async def selector(ctx):
            return ctx["items"]

        async def collector(ctx, results):
            return {**ctx, "count": len(results)}

        node = create_async_node()
        processor = batch_async(node).with_items_selector(selector).with_results_collector(collector)
        result = asyncio.run(processor.execute({"items": [{"id": 1}, {"id": 2}]}))
        self.assertEqual(result["count"], 2)

    def test_sync_node_accepted(self):
        node = create_node().with_execute_logic(square_unless_flagged).with_finalize(store_square)
        result = asyncio.run(batch_async(node).with_items_selector(select_items).execute({"items": five_items()}))
        self.assertEqual(len(result["results"]), 5)

    def test_selector_failure_wrapped(self):
        def broken(ctx):
            raise KeyError("items")

        processor = batch_async(create_async_node()).with_items_selector(broken)
        with self.assertRaises(AsyncBatchError) as cm:
            asyncio.run(processor.execute({}))
        self.assertIsInstance(cm.exception.__cause__, KeyError)
        self.assertIn("Error in async batch execution", str(cm.exception))

    def test_collector_failure_wrapped(self):
        def broken(ctx, results):
            raise RuntimeError("collector")

        processor = batch_async(create_async_node()).with_items_selector(select_items).with_results_collector(broken)
        with self.assertRaises(AsyncBatchError):
            asyncio.run(processor.execute({"items": [{"id": 1}]}))


class TestResultKey(unittest.TestCase):
    def test_lookup_order(self):
        self.assertEqual(result_key({"id": 1}, {"key": "k", "id": "r"}), "k")
        self.assertEqual(result_key({"id": 1}, {"id": "r"}), "r")
        self.assertEqual(result_key({"id": 1}, {"item": {"id": "nested"}}), "nested")
        self.assertEqual(result_key({"id": 1}, 42), "1")
        self.assertEqual(result_key({"key": "item-key"}), "item-key")

    def test_attribute_lookup(self):
        class Item:
            id = "obj"

        self.assertEqual(result_key(Item()), "obj")

    def test_random_fallback(self):
        first, second = result_key("plain"), result_key("plain")
        self.assertRegex(first, r"^[0-9a-f]{9}$")
        self.assertNotEqual(first, second)

    def test_batch_failure_shape(self):
        failure = batch_failure(ValueError("nope"))
        self.assertEqual(failure, {"processed": False, "error": "nope"})
        self.assertTrue(is_batch_failure(failure))
        self.assertFalse(is_batch_failure({"processed": True}))
        self.assertFalse(is_batch_failure("error"))


if __name__ == "__main__":
    unittest.main()
