import threading
import time
import unittest

from timeline_sync.concurrency import map_with_concurrency


class MapWithConcurrencyTests(unittest.TestCase):
    def test_results_keep_input_order(self) -> None:
        def slow_square(value: int) -> int:
            time.sleep(0.001 * (5 - value % 5))
            return value * value

        self.assertEqual(map_with_concurrency(list(range(12)), 4, slow_square), [v * v for v in range(12)])

    def test_never_exceeds_limit(self) -> None:
        lock = threading.Lock()
        active = 0
        peak = 0

        def work(_value: int) -> None:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.005)
            with lock:
                active -= 1

        map_with_concurrency(list(range(20)), 3, work)
        self.assertLessEqual(peak, 3)

    def test_each_item_handled_once(self) -> None:
        seen: list[int] = []
        lock = threading.Lock()

        def record(value: int) -> None:
            with lock:
                seen.append(value)

        map_with_concurrency(list(range(50)), 8, record)
        self.assertEqual(sorted(seen), list(range(50)))

    def test_first_error_is_raised(self) -> None:
        def fail_on_three(value: int) -> int:
            if value == 3:
                raise ValueError("bad item")
            return value

        with self.assertRaises(ValueError):
            map_with_concurrency(list(range(10)), 2, fail_on_three)

    def test_empty_input(self) -> None:
        self.assertEqual(map_with_concurrency([], 4, lambda value: value), [])


if __name__ == "__main__":
    unittest.main()
