import json
import unittest
from unittest import mock

from redis import exceptions as redis_exceptions

from replication.retry_queue import (
    InMemoryRetryQueue,
    RedisRetryQueue,
    decode_operation,
    encode_operation,
)
from shared.types import SyncKind, SyncOperation
from testing_utils import member


def make_operation(op_id="op-1", kind=SyncKind.UPDATE, attempts=1):
    record = member("0.1", "Tyge Larsson", 1545, 1625)
    return SyncOperation(
        id=op_id,
        kind=kind,
        payload={"record": record, "dataset": [record]},
        enqueued_at=1700000000.0,
        attempts=attempts,
        last_error="Store offline",
    )


class InMemoryRetryQueueTests(unittest.TestCase):
    def test_fifo(self):
        queue = InMemoryRetryQueue()
        queue.push(make_operation("a"))
        queue.push(make_operation("b"))

        self.assertEqual(len(queue), 2)
        self.assertEqual(queue.pop().id, "a")
        self.assertEqual(queue.pop().id, "b")
        self.assertIsNone(queue.pop())


class OperationEncodingTests(unittest.TestCase):
    def test_encoded_operation_is_plain_json(self):
        data = json.loads(encode_operation(make_operation(kind=SyncKind.BULK)))
        self.assertEqual(data["kind"], "bulk")
        self.assertEqual(data["attempts"], 1)

    def test_decode_restores_kind_and_payload(self):
        original = make_operation()
        decoded = decode_operation(encode_operation(original).encode("utf-8"))

        self.assertEqual(decoded, original)
        self.assertIs(decoded.kind, SyncKind.UPDATE)
        self.assertEqual(decoded.record["externalId"], "0.1")


class RedisRetryQueueTests(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch("replication.retry_queue.redis.Redis.from_url")
        self.from_url = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = self.from_url.return_value
        self.queue = RedisRetryQueue("redis://localhost:6379/0", queue_key="test:retries")

    def test_push_appends_to_list(self):
        operation = make_operation()
        self.queue.push(operation)
        self.client.rpush.assert_called_once_with("test:retries", encode_operation(operation))

    def test_pop_decodes_head(self):
        operation = make_operation()
        self.client.lpop.return_value = encode_operation(operation).encode("utf-8")

        self.assertEqual(self.queue.pop(), operation)
        self.client.lpop.assert_called_once_with("test:retries")

    def test_pop_empty(self):
        self.client.lpop.return_value = None
        self.assertIsNone(self.queue.pop())

    def test_pop_drops_undecodable_entry(self):
        self.client.lpop.return_value = b"not json"
        with self.assertLogs("replication.retry_queue", level="ERROR"):
            self.assertIsNone(self.queue.pop())

    def test_connection_error_reconnects(self):
        self.client.lpop.side_effect = redis_exceptions.ConnectionError("gone")
        self.client.llen.side_effect = redis_exceptions.ConnectionError("gone")

        self.assertIsNone(self.queue.pop())
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(self.from_url.call_count, 3)

    def test_len(self):
        self.client.llen.return_value = 4
        self.assertEqual(len(self.queue), 4)

    def test_push_holds_operation_while_redis_is_down(self):
        self.client.rpush.side_effect = redis_exceptions.ConnectionError("gone")
        self.client.llen.return_value = 0
        operation = make_operation()

        with self.assertLogs("replication.retry_queue", level="WARNING"):
            self.queue.push(operation)

        self.assertEqual(list(self.queue.overflow), [operation])
        self.assertEqual(len(self.queue), 1)

    def test_held_operations_are_written_in_order_after_reconnect(self):
        self.client.rpush.side_effect = redis_exceptions.ConnectionError("gone")
        first, second, third = make_operation("a"), make_operation("b"), make_operation("c")
        self.queue.push(first)
        self.queue.push(second)

        self.client.rpush.side_effect = None
        self.queue.push(third)

        pushed = [c.args[1] for c in self.client.rpush.call_args_list[-3:]]
        self.assertEqual(pushed, [encode_operation(op) for op in (first, second, third)])
        self.assertEqual(len(self.queue.overflow), 0)

    def test_pop_falls_back_to_held_operations(self):
        self.client.rpush.side_effect = redis_exceptions.ConnectionError("gone")
        self.client.lpop.side_effect = redis_exceptions.ConnectionError("gone")
        operation = make_operation()
        self.queue.push(operation)

        self.assertEqual(self.queue.pop(), operation)
        self.assertIsNone(self.queue.pop())


if __name__ == "__main__":
    unittest.main()
