import json
import unittest
from unittest.mock import patch

from requests import exceptions as requests_exceptions

from mfoldbot.bot.generation import GenerationError, TextGenerator


class _Resp:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text or json.dumps(self._payload)

    def json(self):
        return self._payload


def _completion(content):
    return _Resp(200, {"choices": [{"message": {"content": content}}], "usage": {"total_tokens": 42}})


class TextGeneratorTests(unittest.TestCase):
    def setUp(self):
        self.generator = TextGenerator("sk-test", model="gpt-4", max_retries=1, retry_pause_seconds=1.0)

    @patch("mfoldbot.bot.generation.time.sleep")
    @patch("mfoldbot.bot.generation.requests.post")
    def test_complete_returns_trimmed_content(self, mock_post, mock_sleep):
        mock_post.return_value = _completion("  Will it rain?  \n")
        self.assertEqual(self.generator.complete("prompt"), "Will it rain?")

        url = mock_post.call_args.args[0]
        body = json.loads(mock_post.call_args.kwargs["data"])
        self.assertEqual(url, "https://api.openai.com/v1/chat/completions")
        self.assertEqual(body["messages"], [{"role": "user", "content": "prompt"}])
        self.assertEqual(mock_post.call_args.kwargs["headers"]["Authorization"], "Bearer sk-test")
        mock_sleep.assert_not_called()

    @patch("mfoldbot.bot.generation.time.sleep")
    @patch("mfoldbot.bot.generation.requests.post")
    def test_rate_limit_retries_once_after_fixed_pause(self, mock_post, mock_sleep):
        mock_post.side_effect = [_Resp(429, {"error": "rate limited"}), _completion("ok")]
        self.assertEqual(self.generator.complete("prompt"), "ok")
        self.assertEqual(mock_post.call_count, 2)
        mock_sleep.assert_called_once_with(1.0)

    @patch("mfoldbot.bot.generation.time.sleep")
    @patch("mfoldbot.bot.generation.requests.post")
    def test_retries_are_capped(self, mock_post, mock_sleep):
        mock_post.return_value = _Resp(429, {"error": "rate limited"})
        with self.assertRaises(GenerationError) as ctx:
            self.generator.complete("prompt")
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(mock_post.call_count, 2)
        self.assertEqual(mock_sleep.call_count, 1)

    @patch("mfoldbot.bot.generation.time.sleep")
    @patch("mfoldbot.bot.generation.requests.post")
    def test_terminal_errors_are_not_retried(self, mock_post, mock_sleep):
        mock_post.return_value = _Resp(400, {"error": "bad request"})
        with self.assertRaises(GenerationError) as ctx:
            self.generator.complete("prompt")
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(mock_post.call_count, 1)
        mock_sleep.assert_not_called()

    @patch("mfoldbot.bot.generation.time.sleep")
    @patch("mfoldbot.bot.generation.requests.post")
    def test_network_timeout_is_retryable(self, mock_post, mock_sleep):
        mock_post.side_effect = [requests_exceptions.Timeout("slow"), _completion("ok")]
        self.assertEqual(self.generator.complete("prompt"), "ok")
        mock_sleep.assert_called_once_with(1.0)

    @patch("mfoldbot.bot.generation.time.sleep")
    @patch("mfoldbot.bot.generation.requests.post")
    def test_missing_choices_is_terminal(self, mock_post, mock_sleep):
        mock_post.return_value = _Resp(200, {"choices": []})
        with self.assertRaises(GenerationError):
            self.generator.complete("prompt")
        self.assertEqual(mock_post.call_count, 1)
        mock_sleep.assert_not_called()

    @patch("mfoldbot.bot.generation.time.sleep")
    @patch("mfoldbot.bot.generation.requests.post")
    def test_zero_retries_disables_retry(self, mock_post, mock_sleep):
        generator = TextGenerator("sk-test", max_retries=0)
        mock_post.return_value = _Resp(503, {"error": "unavailable"})
        with self.assertRaises(GenerationError):
            generator.complete("prompt")
        self.assertEqual(mock_post.call_count, 1)
        mock_sleep.assert_not_called()


if __name__ == "__main__":
    unittest.main()
