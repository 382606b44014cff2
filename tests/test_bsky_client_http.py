import json
import tempfile
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import patch

from mfoldbot.bot.models import PostRef
from mfoldbot.bsky_client import BskyAuthError, BskyClient, BskyCredentials, detect_link_facets


class _Resp:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text or json.dumps(self._payload)

    def json(self):
        return self._payload


SESSION = {
    "did": "did:plc:bot",
    "handle": "mfoldbot.bsky.social",
    "accessJwt": "access-1",
    "refreshJwt": "refresh-1",
}


def _client(**kwargs):
    return BskyClient(credentials=BskyCredentials("mfoldbot.bsky.social", "app-pass"), service="https://pds.test", **kwargs)


class BskyClientSessionTests(unittest.TestCase):
    @patch("mfoldbot.bsky_client.requests.post")
    def test_login_stores_session_file(self, mock_post):
        mock_post.return_value = _Resp(200, SESSION)
        with tempfile.TemporaryDirectory() as tmp:
            session_path = Path(tmp) / "memory" / "bsky_session.json"
            client = _client(session_path=session_path)
            client.login()
            saved = json.loads(session_path.read_text(encoding="utf-8"))

        self.assertEqual(saved["accessJwt"], "access-1")
        self.assertEqual(client.handle, "mfoldbot.bsky.social")
        self.assertEqual(client.did, "did:plc:bot")
        url = mock_post.call_args.args[0]
        self.assertEqual(url, "https://pds.test/xrpc/com.atproto.server.createSession")
        body = json.loads(mock_post.call_args.kwargs["data"])
        self.assertEqual(body, {"identifier": "mfoldbot.bsky.social", "password": "app-pass"})

    @patch("mfoldbot.bsky_client.requests.post")
    def test_rejected_credentials_raise_auth_error(self, mock_post):
        mock_post.return_value = _Resp(401, {"error": "AuthenticationRequired", "message": "Invalid identifier or password"})
        with self.assertRaises(BskyAuthError):
            _client().login()

    @patch("mfoldbot.bsky_client.requests.post")
    @patch("mfoldbot.bsky_client.requests.get")
    def test_ensure_session_resumes_saved_session(self, mock_get, mock_post):
        mock_get.return_value = _Resp(200, {"did": "did:plc:bot", "handle": "mfoldbot.bsky.social"})
        with tempfile.TemporaryDirectory() as tmp:
            session_path = Path(tmp) / "session.json"
            session_path.write_text(json.dumps(SESSION), encoding="utf-8")
            client = _client(session_path=session_path)
            client.ensure_session()

        mock_post.assert_not_called()
        self.assertEqual(client.session["accessJwt"], "access-1")

    @patch("mfoldbot.bsky_client.requests.request")
    @patch("mfoldbot.bsky_client.requests.post")
    def test_expired_token_is_refreshed_and_request_retried(self, mock_post, mock_request):
        mock_post.return_value = _Resp(200, dict(SESSION, accessJwt="access-2", refreshJwt="refresh-2"))
        mock_request.side_effect = [
            _Resp(400, {"error": "ExpiredToken", "message": "Token has expired"}),
            _Resp(200, {"notifications": []}),
        ]
        client = _client()
        client.session = dict(SESSION)

        self.assertEqual(client.list_notifications(), [])
        self.assertEqual(mock_request.call_count, 2)
        self.assertTrue(mock_post.call_args.args[0].endswith("com.atproto.server.refreshSession"))
        self.assertEqual(mock_post.call_args.kwargs["headers"]["Authorization"], "Bearer refresh-1")
        second_headers = mock_request.call_args_list[1].kwargs["headers"]
        self.assertEqual(second_headers["Authorization"], "Bearer access-2")

    @patch("mfoldbot.bsky_client.requests.request")
    @patch("mfoldbot.bsky_client.requests.post")
    def test_concurrent_expiry_refreshes_once(self, mock_post, mock_request):
        both_expired = threading.Barrier(2, timeout=5)

        def _fake_request(method, url, headers=None, **kwargs):
            if headers["Authorization"] == "Bearer access-1":
                both_expired.wait()
                return _Resp(400, {"error": "ExpiredToken", "message": "Token has expired"})
            return _Resp(200, {"notifications": []})

        def _fake_refresh(url, headers=None, timeout=30):
            self.assertEqual(headers["Authorization"], "Bearer refresh-1")
            return _Resp(200, dict(SESSION, accessJwt="access-2", refreshJwt="refresh-2"))

        mock_request.side_effect = _fake_request
        mock_post.side_effect = _fake_refresh
        client = _client()
        client.session = dict(SESSION)

        with ThreadPoolExecutor(max_workers=2) as executor:
            results = list(executor.map(lambda _: client.list_notifications(), range(2)))

        self.assertEqual(results, [[], []])
        self.assertEqual(mock_post.call_count, 1)
        self.assertEqual(client.session["accessJwt"], "access-2")

    @patch("mfoldbot.bsky_client.requests.post")
    def test_login_swaps_session_in_one_step(self, mock_post):
        client = _client()
        client.session = dict(SESSION, stale="x")
        before = client.session
        mock_post.return_value = _Resp(200, dict(SESSION, accessJwt="access-3"))

        client.login()

        self.assertEqual(before["accessJwt"], "access-1")
        self.assertNotIn("stale", client.session)
        self.assertEqual(client.session["accessJwt"], "access-3")

    def test_calls_without_session_raise_auth_error(self):
        with self.assertRaises(BskyAuthError):
            _client().list_notifications()


class BskyClientFeedTests(unittest.TestCase):
    def setUp(self):
        self.client = _client()
        self.client.session = dict(SESSION)

    @patch("mfoldbot.bsky_client.requests.request")
    def test_list_notifications_parses_reply_refs(self, mock_request):
        mock_request.return_value = _Resp(
            200,
            {
                "notifications": [
                    {
                        "uri": "at://did:plc:alice/app.bsky.feed.post/m1",
                        "cid": "cid-m1",
                        "author": {"did": "did:plc:alice", "handle": "alice.bsky.social"},
                        "reason": "mention",
                        "isRead": False,
                        "indexedAt": "2023-04-17T12:00:00.000Z",
                        "record": {
                            "text": "@mfoldbot.bsky.social odds?",
                            "reply": {
                                "root": {"uri": "at://did:plc:t/app.bsky.feed.post/r", "cid": "cid-r"},
                                "parent": {"uri": "at://did:plc:t/app.bsky.feed.post/p", "cid": "cid-p"},
                            },
                        },
                    },
                    {
                        "uri": "at://did:plc:bob/app.bsky.graph.follow/f1",
                        "cid": "cid-f1",
                        "author": {"handle": "bob.bsky.social"},
                        "reason": "follow",
                        "isRead": True,
                        "indexedAt": "2023-04-17T11:00:00.000Z",
                        "record": {},
                    },
                ]
            },
        )

        items = self.client.list_notifications(limit=25)

        self.assertEqual(mock_request.call_args.kwargs["params"], {"limit": 25})
        self.assertEqual(len(items), 2)
        mention, follow = items
        self.assertEqual(mention.author_handle, "alice.bsky.social")
        self.assertEqual(mention.reply.parent, PostRef("at://did:plc:t/app.bsky.feed.post/p", "cid-p"))
        self.assertEqual(mention.reply.root.uri, "at://did:plc:t/app.bsky.feed.post/r")
        self.assertIsNone(follow.reply)
        self.assertTrue(follow.is_read)

    @patch("mfoldbot.bsky_client.requests.request")
    def test_update_seen_posts_timestamp(self, mock_request):
        mock_request.return_value = _Resp(200, {})
        self.client.update_seen("2023-04-17T12:00:00.000Z")
        method, url = mock_request.call_args.args
        self.assertEqual(method, "POST")
        self.assertTrue(url.endswith("app.bsky.notification.updateSeen"))
        self.assertEqual(json.loads(mock_request.call_args.kwargs["data"]), {"seenAt": "2023-04-17T12:00:00.000Z"})

    @patch("mfoldbot.bsky_client.requests.request")
    def test_get_post_thread_returns_parent_post(self, mock_request):
        mock_request.return_value = _Resp(
            200,
            {
                "thread": {
                    "$type": "app.bsky.feed.defs#threadViewPost",
                    "post": {
                        "uri": "at://did:plc:t/app.bsky.feed.post/p",
                        "cid": "cid-p",
                        "author": {"handle": "testing.bsky.social"},
                        "record": {"text": "bot by Friday", "createdAt": "2023-04-17T10:00:00.000Z"},
                    },
                }
            },
        )
        post = self.client.get_post_thread("at://did:plc:t/app.bsky.feed.post/p")
        self.assertEqual(post.text, "bot by Friday")
        self.assertEqual(post.author_handle, "testing.bsky.social")
        self.assertEqual(mock_request.call_args.kwargs["params"]["depth"], 0)

    @patch("mfoldbot.bsky_client.requests.request")
    def test_missing_thread_raises(self, mock_request):
        mock_request.return_value = _Resp(200, {"thread": {"$type": "app.bsky.feed.defs#notFoundPost"}})
        with self.assertRaises(RuntimeError):
            self.client.get_post_thread("at://did:plc:t/app.bsky.feed.post/gone")

    @patch("mfoldbot.bsky_client.requests.request")
    def test_reply_links_thread_and_url_facet(self, mock_request):
        mock_request.return_value = _Resp(200, {"uri": "at://did:plc:bot/app.bsky.feed.post/new", "cid": "cid-new"})
        root = PostRef("at://did:plc:t/app.bsky.feed.post/r", "cid-r")
        parent = PostRef("at://did:plc:alice/app.bsky.feed.post/m1", "cid-m1")
        text = '"Will it ship?"\n\nYou can find the prediction market for this post at https://manifold.markets/u/will-it-ship'

        result = self.client.reply(text, root=root, parent=parent)

        self.assertEqual(result["cid"], "cid-new")
        body = json.loads(mock_request.call_args.kwargs["data"])
        self.assertEqual(body["repo"], "did:plc:bot")
        self.assertEqual(body["collection"], "app.bsky.feed.post")
        record = body["record"]
        self.assertEqual(record["reply"]["root"], {"uri": root.uri, "cid": "cid-r"})
        self.assertEqual(record["reply"]["parent"], {"uri": parent.uri, "cid": "cid-m1"})
        self.assertEqual(record["facets"][0]["features"][0]["uri"], "https://manifold.markets/u/will-it-ship")

    @patch("mfoldbot.bsky_client.requests.request")
    def test_forbidden_is_an_auth_error(self, mock_request):
        mock_request.return_value = _Resp(403, {"error": "Forbidden"})
        with self.assertRaises(BskyAuthError):
            self.client.list_notifications()

    @patch("mfoldbot.bsky_client.requests.request")
    def test_server_error_is_runtime_error(self, mock_request):
        mock_request.return_value = _Resp(502, {"message": "upstream"})
        with self.assertRaises(RuntimeError) as ctx:
            self.client.list_notifications()
        self.assertNotIsInstance(ctx.exception, BskyAuthError)


class LinkFacetTests(unittest.TestCase):
    def test_offsets_are_utf8_bytes(self):
        text = "café → https://manifold.markets/u/x."
        facets = detect_link_facets(text)
        self.assertEqual(len(facets), 1)
        index = facets[0]["index"]
        encoded = text.encode("utf-8")
        self.assertEqual(encoded[index["byteStart"] : index["byteEnd"]].decode("utf-8"), "https://manifold.markets/u/x")

    def test_plain_text_has_no_facets(self):
        self.assertEqual(detect_link_facets("no links here"), [])


if __name__ == "__main__":
    unittest.main()
