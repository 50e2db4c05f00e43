import asyncio
import logging
import time
import unittest
from unittest.mock import AsyncMock, Mock

from poolindexer.utils.retries import with_retries


class TestWithRetries(unittest.TestCase):
    """Test cases for the with_retries coroutine."""

    def test_successful_operation_first_attempt(self):
        """Test that a successful operation on the first attempt returns the result."""
        logger = Mock(spec=logging.Logger)
        operation = AsyncMock(return_value="success")

        result = asyncio.run(with_retries(operation, logger, max_attempts=5, delay=0))

        assert result == "success"
        assert operation.call_count == 1
        logger.info.assert_called_once_with("Attempt: %s", 1)

    def test_successful_operation_after_retries(self):
        """Test that operation succeeds after a few failures."""
        logger = Mock(spec=logging.Logger)
        operation = AsyncMock(
            side_effect=[Exception("Error 1"), Exception("Error 2"), "success"]
        )

        result = asyncio.run(with_retries(operation, logger, max_attempts=5, delay=0))

        assert result == "success"
        assert operation.call_count == 3
        assert logger.info.call_count == 3
        assert logger.error.call_count == 2

    def test_all_attempts_fail(self):
        """Test that the last exception is raised when all attempts fail."""
        logger = Mock(spec=logging.Logger)
        operation = AsyncMock(side_effect=ConnectionError("Persistent error"))

        with self.assertRaises(ConnectionError):
            asyncio.run(with_retries(operation, logger, max_attempts=3, delay=0))

        assert operation.call_count == 3
        assert logger.error.call_count == 3

    def test_exponential_backoff_delay(self):
        """Test that exponential backoff is applied."""
        logger = Mock(spec=logging.Logger)
        operation = AsyncMock(
            side_effect=[Exception("Error 1"), Exception("Error 2"), "success"]
        )

        delay = 0.02
        start_time = time.time()
        result = asyncio.run(
            with_retries(operation, logger, max_attempts=5, delay=delay)
        )
        elapsed_time = time.time() - start_time

        # First retry: delay * 2^0, second retry: delay * 2^1.
        assert result == "success"
        assert elapsed_time >= delay * (2**0 + 2**1)


if __name__ == "__main__":
    unittest.main()
