import base64
import json
from unittest.mock import Mock, patch

from django.test import SimpleTestCase

from generation_jobs.credentials import ResolvedCredential
from generation_jobs.errors import ErrorClass, GenerationError
from generation_jobs.providers.base import classify_http_error, parse_retry_after
from generation_jobs.providers.images import ImageClient
from generation_jobs.providers.jobs import AsyncJobClient, normalize_status
from generation_jobs.providers.structured import StructuredScriptClient
from generation_jobs.schemas import SCENE_SCRIPT_SCHEMA, schema_errors, validate_script
from generation_jobs.tests.fakes import valid_script

CREDENTIAL = ResolvedCredential(api_key="sk-test-0000", source="primary")


def response(status_code=200, payload=None, text=None, headers=None):
    mocked = Mock()
    mocked.status_code = status_code
    mocked.headers = headers or {}
    mocked.text = text if text is not None else json.dumps(payload or {})
    mocked.json.return_value = payload
    return mocked


class ErrorClassificationTests(SimpleTestCase):
    def test_rate_limit_carries_retry_hint(self):
        error = classify_http_error(429, '{"error": {"message": "slow down"}}', {"Retry-After": "5"}, provider="openai")
        self.assertEqual(error.error_class, ErrorClass.TRANSIENT_RATE_LIMIT)
        self.assertEqual(error.retry_after, 5.0)
        self.assertFalse(error.quota_exhausted)
        self.assertIn("slow down", error.message)

    def test_quota_exhaustion_is_flagged(self):
        body = '{"error": {"code": "insufficient_quota", "message": "You exceeded your current quota"}}'
        self.assertTrue(classify_http_error(429, body).quota_exhausted)
        self.assertTrue(classify_http_error(402, "").quota_exhausted)

    def test_auth_failures_and_other_statuses(self):
        self.assertEqual(classify_http_error(401).error_class, ErrorClass.CREDENTIAL_INVALID)
        self.assertEqual(classify_http_error(403).error_class, ErrorClass.CREDENTIAL_INVALID)
        self.assertEqual(classify_http_error(400).error_class, ErrorClass.UNKNOWN)
        self.assertEqual(classify_http_error(503).error_class, ErrorClass.UNKNOWN)

    def test_retry_after_parsing(self):
        self.assertEqual(parse_retry_after("12"), 12.0)
        self.assertEqual(parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT"), 0.0)
        self.assertIsNone(parse_retry_after("soon"))
        self.assertIsNone(parse_retry_after(None))


class StructuredScriptClientTests(SimpleTestCase):
    @patch("generation_jobs.providers.base.requests.post")
    def test_submit_requests_strict_schema_output(self, post):
        content = json.dumps(valid_script())
        post.return_value = response(payload={"choices": [{"message": {"content": content}}]})

        result = StructuredScriptClient("gpt-test").submit(
            "Explain orbits", SCENE_SCRIPT_SCHEMA, credential=CREDENTIAL, temperature=0.3
        )

        self.assertEqual(result["payload"]["version"], "1.0")
        self.assertEqual(result["raw_text"], content)
        body = post.call_args.kwargs["json"]
        self.assertEqual(body["temperature"], 0.3)
        self.assertTrue(body["response_format"]["json_schema"]["strict"])
        self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], "Bearer sk-test-0000")

    @patch("generation_jobs.providers.base.requests.post")
    def test_non_json_content_is_schema_invalid_with_raw_text(self, post):
        post.return_value = response(payload={"choices": [{"message": {"content": "{not json"}}]})
        with self.assertRaises(GenerationError) as ctx:
            StructuredScriptClient("gpt-test").submit("x", SCENE_SCRIPT_SCHEMA, credential=CREDENTIAL, temperature=0.7)
        self.assertEqual(ctx.exception.error_class, ErrorClass.SCHEMA_INVALID)
        self.assertEqual(ctx.exception.raw_text, "{not json")

    @patch("generation_jobs.providers.base.requests.post")
    def test_http_429_is_raised_as_rate_limit(self, post):
        post.return_value = response(429, text='{"error": {"message": "rate"}}', headers={"Retry-After": "2"})
        with self.assertRaises(GenerationError) as ctx:
            StructuredScriptClient("gpt-test").submit("x", SCENE_SCRIPT_SCHEMA, credential=CREDENTIAL, temperature=0.7)
        self.assertEqual(ctx.exception.error_class, ErrorClass.TRANSIENT_RATE_LIMIT)
        self.assertEqual(ctx.exception.retry_after, 2.0)


class ImageClientTests(SimpleTestCase):
    @patch("generation_jobs.providers.base.requests.post")
    def test_returns_inline_image_bytes_and_sends_references(self, post):
        encoded = base64.b64encode(b"image-bytes").decode("ascii")
        post.return_value = response(
            payload={"candidates": [{"content": {"parts": [{"text": "ok"}, {"inlineData": {"data": encoded}}]}}]}
        )
        references = [{"name": f"ref{n}", "base64_data": "AAAA", "mime_type": "image/png"} for n in range(7)]

        image = ImageClient("gemini-test").submit("A red rocket", references, credential=CREDENTIAL)

        self.assertEqual(image, b"image-bytes")
        parts = post.call_args.kwargs["json"]["contents"][0]["parts"]
        self.assertEqual(len(parts), 6)
        self.assertIn("A red rocket", parts[-1]["text"])
        self.assertEqual(post.call_args.kwargs["headers"]["x-goog-api-key"], "sk-test-0000")

    @patch("generation_jobs.providers.base.requests.post")
    def test_missing_image_data_is_an_error(self, post):
        post.return_value = response(payload={"candidates": [{"content": {"parts": [{"text": "no image"}]}}]})
        with self.assertRaises(GenerationError):
            ImageClient("gemini-test").submit("A red rocket", [], credential=CREDENTIAL)


class AsyncJobClientTests(SimpleTestCase):
    @patch("generation_jobs.providers.base.requests.post")
    def test_start_returns_job_id(self, post):
        post.return_value = response(payload={"job_id": "job-42"})
        client = AsyncJobClient("https://render.example.test/", token="tok", provider="render-service")

        self.assertEqual(client.start({"manifest": {}}), "job-42")
        self.assertEqual(post.call_args.args[0], "https://render.example.test/start")
        self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], "Bearer tok")

    def test_unconfigured_endpoint_is_an_error(self):
        with self.assertRaises(GenerationError):
            AsyncJobClient("").start({})

    def test_status_payloads_are_normalized(self):
        nested = normalize_status(
            {"job": {"status": "running", "progress": {"percent": 55, "stage": "encode", "message": "half"}}}
        )
        self.assertEqual((nested["state"], nested["progress"], nested["stage"]), ("processing", 55, "encode"))

        done = normalize_status({"status": "succeeded", "output": {"url": "https://x/out.mp4", "duration_ms": 9000}})
        self.assertEqual(done["state"], "completed")
        self.assertEqual(done["progress"], 100)
        self.assertEqual(done["artifact_url"], "https://x/out.mp4")
        self.assertEqual(done["duration_ms"], 9000)

        failed = normalize_status({"status": "error", "error": {"code": "OOM", "message": "out of memory"}})
        self.assertEqual((failed["state"], failed["error_code"]), ("failed", "OOM"))


class ScriptSchemaTests(SimpleTestCase):
    def test_valid_script_passes(self):
        self.assertEqual(schema_errors(valid_script()), [])

    def test_errors_are_capped_and_raised_as_schema_invalid(self):
        broken = valid_script(12)
        for scene in broken["scenes"]:
            scene["dialogue"] = "too short"
        self.assertEqual(len(schema_errors(broken)), 10)
        with self.assertRaises(GenerationError) as ctx:
            validate_script(broken, raw_text="raw")
        self.assertEqual(ctx.exception.error_class, ErrorClass.SCHEMA_INVALID)
        self.assertEqual(ctx.exception.raw_text, "raw")
