import unittest


class TestRetryPolicy(unittest.TestCase):
    def test_backoff_doubles_and_caps(self) -> None:
        from autoresume.daemon.retry import RetryPolicy

        p = RetryPolicy(base_delay_s=15, factor=2, max_delay_s=100)
        self.assertEqual([p.next_delay(n) for n in (1, 2, 3, 4)], [15, 30, 60, 100])
        self.assertEqual(p.next_delay(0), 15)
        self.assertEqual(p.next_delay(10_000), 100)

    def test_should_retry_counts_total_attempts(self) -> None:
        from autoresume.daemon.retry import RetryPolicy

        p = RetryPolicy(max_retries=3)
        self.assertTrue(p.should_retry(1))
        self.assertTrue(p.should_retry(2))
        self.assertFalse(p.should_retry(3))
        self.assertTrue(p.should_retry(3, max_retries=5))
        self.assertFalse(RetryPolicy(max_retries=0).should_retry(0))

    def test_attempts_are_per_event(self) -> None:
        from autoresume.daemon.retry import RetryPolicy

        p = RetryPolicy()
        self.assertEqual(p.record_attempt("a"), 1)
        self.assertEqual(p.record_attempt("a"), 2)
        self.assertEqual(p.record_attempt("b"), 1)
        self.assertEqual(p.attempts("a"), 2)
        p.reset("a")
        self.assertEqual(p.attempts("a"), 0)
        self.assertEqual(p.attempts("b"), 1)
        p.reset("missing")

    def test_inputs_are_sanitized(self) -> None:
        from autoresume.daemon.retry import RetryPolicy

        p = RetryPolicy(max_retries=-2, base_delay_s=-1, factor=0.5, max_delay_s=-5)
        self.assertEqual(p.max_retries, 0)
        self.assertEqual(p.base_delay_s, 0.0)
        self.assertEqual(p.factor, 1.0)
        self.assertEqual(p.next_delay(5), 0.0)


if __name__ == "__main__":
    unittest.main()
